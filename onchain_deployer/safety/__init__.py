"""Safety module for onchain-deployer.

This module guards administrator role migrations:
- Grant-before-revoke sequencing per rotation pair
- Optional on-chain confirmation of grants before revoking
- Refusal to revoke the last confirmed administrator

CRITICAL: All revoke_role steps must pass through this module.
"""
