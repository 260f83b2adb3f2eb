"""Verification module for onchain-deployer.

This module runs read-only sanity checks against deployed contracts. Failed
checks become warnings on the workflow report; they never abort a workflow.
"""
