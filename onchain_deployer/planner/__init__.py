"""Planner module for onchain-deployer.

This module turns declarative workflow definitions into validated step graphs:
- Workflow definition models and YAML loading
- Dependency resolution and cycle detection
- Deterministic execution order
"""
