"""Binder module for onchain-deployer.

This module resolves parameter sources into typed call arguments:
- Configuration lookups with defaults
- Outputs of confirmed steps
- Domain validation (addresses, basis points, amounts, durations, roles)
"""
