"""Executor module for onchain-deployer.

This module submits planned steps to a ledger:
- Ledger protocol and an in-memory simulated ledger
- Nonce allocation and confirmation waits with a timeout
- Error classification of failed submissions
- Append-only execution log for auditing and resume
"""
