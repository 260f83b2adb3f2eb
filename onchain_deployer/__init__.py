"""onchain-deployer - declarative contract deployment and role migration.

Workflows are declared as step graphs, planned into a deterministic order and
interpreted by a single orchestrator against a ledger adapter.
"""

__version__ = "0.3.0"
