"""Pytest configuration and shared fixtures for onchain-deployer tests."""

import asyncio
from typing import Any, Dict

import pytest

from onchain_deployer.binder.models import DeploymentConfig
from onchain_deployer.executor.ledger import DEFAULT_SENDER, SimulatedLedger
from onchain_deployer.planner.deployment_planner import DeploymentPlan, DeploymentPlanner
from onchain_deployer.planner.models import WorkflowDefinition
from onchain_deployer.planner.workflow_loader import parse_workflow


def make_address(n: int) -> str:
    """Deterministic, valid, non-zero test address."""
    return "0x" + f"{n:040x}"


TREASURY = make_address(2)
REGISTRY = make_address(3)
OPERATOR = make_address(4)


@pytest.fixture(scope="session")
def event_loop_policy():
    """Set the event loop policy for the test session."""
    return asyncio.DefaultEventLoopPolicy()


@pytest.fixture
def sample_env() -> Dict[str, str]:
    """Configuration for the sample token workflow."""
    return {
        "FEE_BPS": "250",
        "TREASURY": TREASURY,
        "REGISTRY": REGISTRY,
        "OPERATOR": OPERATOR,
        "DEPLOYER": DEFAULT_SENDER,
    }


@pytest.fixture
def sample_config(sample_env: Dict[str, str]) -> DeploymentConfig:
    return DeploymentConfig(values=sample_env, source_description="test")


@pytest.fixture
def sample_workflow_document() -> Dict[str, Any]:
    """A small workflow: deploy, wire into a registry, rotate the admin role."""
    return {
        "name": "token-rollout",
        "description": "Deploy a token, register it and hand admin to the operator",
        "contracts": {
            "token": {"capability": "token", "artifact": "Token"},
            "registry": {"capability": "registry", "address": {"env": "REGISTRY"}},
        },
        "steps": [
            {
                "id": "deploy_token",
                "kind": "deploy",
                "target": "token",
                "params": {
                    "fee_bps": {"env": "FEE_BPS", "type": "basis_points"},
                    "treasury": {"env": "TREASURY", "type": "address"},
                },
            },
            {
                "id": "register_token",
                "kind": "configure",
                "target": "registry",
                "operation": "setToken",
                "params": {"token": {"step": "deploy_token", "type": "address"}},
            },
            {
                "id": "grant_admin_operator",
                "kind": "grant_role",
                "target": "token",
                "params": {"role": "DEFAULT_ADMIN_ROLE", "account": {"env": "OPERATOR"}},
            },
            {
                "id": "revoke_admin_deployer",
                "kind": "revoke_role",
                "target": "token",
                "paired_with": "grant_admin_operator",
                "params": {"role": "DEFAULT_ADMIN_ROLE", "account": {"env": "DEPLOYER"}},
            },
        ],
        "verify": [
            {
                "check": "has_role",
                "target": "token",
                "params": {"role": "DEFAULT_ADMIN_ROLE", "account": {"env": "OPERATOR"}},
            }
        ],
    }


@pytest.fixture
def sample_workflow(sample_workflow_document: Dict[str, Any]) -> WorkflowDefinition:
    return parse_workflow(sample_workflow_document)


@pytest.fixture
def sample_plan(sample_config: DeploymentConfig, sample_workflow: WorkflowDefinition) -> DeploymentPlan:
    return DeploymentPlanner(sample_config).plan(sample_workflow)


@pytest.fixture
def ledger() -> SimulatedLedger:
    """Simulated ledger signing as DEFAULT_SENDER."""
    return SimulatedLedger()


@pytest.fixture
def launchpad_env() -> Dict[str, str]:
    """Complete configuration for the bundled launchpad workflow."""
    return {
        "DEPLOYER": DEFAULT_SENDER,
        "ADMIN": OPERATOR,
        "CONTRACT_CONTROLLER": make_address(10),
        "BRIDGED_TOKEN": make_address(11),
        "BUY_TAX": "100",
        "SELL_TAX": "100",
        "ANTI_SNIPER_BUY_TAX_START_VALUE": "9900",
        "ANTI_SNIPER_TAX_VAULT": make_address(12),
        "FFACTORY_TAX_VAULT": make_address(13),
        "FROUTER_TAX_MANAGER": make_address(14),
        "AGENT_DAO": make_address(15),
        "TBA_REGISTRY": make_address(16),
        "AGENT_NFT_V2": make_address(17),
        "AGENT_FACTORY_VAULT": make_address(18),
        "AGENT_FACTORY_NEXT_ID": "1",
        "AGENT_FACTORY_MATURITY_DURATION": "315360000",
        "UNISWAP_V2_ROUTER": make_address(19),
        "LAUNCHPAD_CREATION_FEE_TO_ADDRESS": make_address(20),
        "LAUNCHPAD_FEE_AMOUNT": "100000000000000000000",
        "INITIAL_SUPPLY": "1000000000",
        "ASSET_RATE": "5000",
        "MAX_TX": "100",
        "GRAD_THRESHOLD": "29439252000000000000000000",
        "LAUNCHPAD_START_TIME_DELAY": "86400",
        "TAX_SWAP_THRESHOLD_BASIS_POINTS": "10",
        "TBA_SALT": "0xa7647ac9429fdce477ebd9a95510385b756c757c26149e740abbab0ad1be2f16",
        "TBA_IMPLEMENTATION": make_address(21),
        "DAO_VOTING_PERIOD": "600",
        "DAO_THRESHOLD": "1000000000000000000000",
        "TEAM_TOKEN_RESERVED_SUPPLY": "550000000",
        "TEAM_TOKEN_RESERVED_WALLET": make_address(22),
    }


@pytest.fixture
def address():
    """Factory for valid test addresses: ``address(7)``."""
    return make_address
