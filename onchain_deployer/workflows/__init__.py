"""Workflow definitions shipped with onchain-deployer."""
