"""Tests for workflow models and the deployment planner."""

import copy

import pytest
import yaml

from onchain_deployer.binder.models import DeploymentConfig
from onchain_deployer.planner.deployment_planner import DeploymentPlanner
from onchain_deployer.planner.models import (
    ConfigurationError,
    ContractReference,
    EnvironmentSource,
    LiteralSource,
    ParameterDomain,
    ParameterSpec,
    StepCondition,
    StepKind,
    StepOutputSource,
    StepStateError,
    StepStatus,
)
from onchain_deployer.planner.workflow_loader import (
    list_bundled_workflows,
    load_bundled_workflow,
    load_workflow,
    parse_workflow,
)

CONTRACT_ADDRESS = "0x" + "ab" * 20


def configure_step(step_id, depends_on=None, **extra):
    step = {
        "id": step_id,
        "kind": "configure",
        "target": "box",
        "operation": f"set_{step_id}",
        "depends_on": depends_on or [],
    }
    step.update(extra)
    return step


def box_workflow(steps):
    return parse_workflow(
        {
            "name": "box",
            "contracts": {"box": {"address": CONTRACT_ADDRESS}},
            "steps": steps,
        }
    )


class TestParameterSpec:
    """Test shorthand expansion of parameter sources."""

    def test_scalar_is_literal(self):
        spec = ParameterSpec.model_validate("DEFAULT_ADMIN_ROLE")
        assert isinstance(spec.source, LiteralSource)
        assert spec.source.value == "DEFAULT_ADMIN_ROLE"
        assert spec.domain == ParameterDomain.ANY

    def test_env_with_default_and_type(self):
        spec = ParameterSpec.model_validate({"env": "DAO_QUORUM_BPS", "default": 500, "type": "basis_points"})
        assert isinstance(spec.source, EnvironmentSource)
        assert spec.source.key == "DAO_QUORUM_BPS"
        assert spec.source.has_default
        assert spec.source.default == 500
        assert spec.domain == ParameterDomain.BASIS_POINTS

    def test_env_without_default(self):
        spec = ParameterSpec.model_validate({"env": "ADMIN"})
        assert not spec.source.has_default

    def test_none_is_a_declared_default(self):
        spec = ParameterSpec.model_validate({"env": "OPTIONAL", "default": None})
        assert spec.source.has_default

    def test_step_output_defaults_to_address(self):
        spec = ParameterSpec.model_validate({"step": "deploy_token"})
        assert isinstance(spec.source, StepOutputSource)
        assert spec.source.step_id == "deploy_token"
        assert spec.source.output == "address"
        assert spec.is_deferred

    def test_mapping_without_known_key_is_literal(self):
        spec = ParameterSpec.model_validate({"start_time": 0, "end_time": 10})
        assert isinstance(spec.source, LiteralSource)
        assert spec.source.value == {"start_time": 0, "end_time": 10}


class TestStepCondition:
    """Test inclusion predicates."""

    def test_truthy_values(self):
        condition = StepCondition(env="FLAG")
        assert condition.evaluate({"FLAG": "true"})
        assert condition.evaluate({"FLAG": "1"})
        assert not condition.evaluate({"FLAG": "false"})
        assert not condition.evaluate({})

    def test_present(self):
        assert StepCondition(env="ADMIN", present=True).evaluate({"ADMIN": "0x1"})
        assert not StepCondition(env="ADMIN", present=True).evaluate({"ADMIN": "  "})
        assert StepCondition(env="ADMIN", present=False).evaluate({})

    def test_equals(self):
        condition = StepCondition(env="NETWORK", equals="base")
        assert condition.evaluate({"NETWORK": "base"})
        assert not condition.evaluate({"NETWORK": "mainnet"})


class TestWorkflowValidation:
    """Test model-level validation of workflow documents."""

    def test_role_steps_require_role_and_account(self):
        with pytest.raises(ConfigurationError, match="Invalid workflow definition"):
            box_workflow([{"id": "grant", "kind": "grant_role", "target": "box", "params": {"role": "ADMIN_ROLE"}}])

    def test_role_step_domains_are_forced(self):
        workflow = box_workflow(
            [
                {
                    "id": "grant",
                    "kind": "grant_role",
                    "target": "box",
                    "params": {"role": "ADMIN_ROLE", "account": {"env": "ADMIN"}},
                }
            ]
        )
        params = workflow.steps[0].params
        assert params["role"].domain == ParameterDomain.ROLE
        assert params["account"].domain == ParameterDomain.ADDRESS

    def test_only_revokes_may_be_paired(self):
        with pytest.raises(ConfigurationError):
            box_workflow(
                [
                    {
                        "id": "grant",
                        "kind": "grant_role",
                        "target": "box",
                        "paired_with": "other",
                        "params": {"role": "ADMIN_ROLE", "account": {"env": "ADMIN"}},
                    }
                ]
            )

    def test_configure_needs_operation(self):
        with pytest.raises(ConfigurationError):
            box_workflow([{"id": "configure", "kind": "configure", "target": "box"}])

    def test_non_mapping_document(self):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            parse_workflow(["not", "a", "mapping"])

    def test_load_workflow_from_file(self, tmp_path, sample_workflow_document):
        path = tmp_path / "workflow.yaml"
        path.write_text(yaml.safe_dump(sample_workflow_document))
        workflow = load_workflow(path)
        assert workflow.name == "token-rollout"
        assert len(workflow.steps) == 4

    def test_load_workflow_bad_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("steps: [unclosed")
        with pytest.raises(ConfigurationError, match="not valid YAML"):
            load_workflow(path)

    def test_load_workflow_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_workflow(tmp_path / "absent.yaml")


class TestDeploymentPlanner:
    """Test DeploymentPlanner graph validation and ordering."""

    def test_plan_orders_dependencies_first(self, sample_plan):
        assert sample_plan.order == [
            "deploy_token",
            "register_token",
            "grant_admin_operator",
            "revoke_admin_deployer",
        ]

    def test_implicit_dependencies(self, sample_plan):
        assert sample_plan.get("register_token").depends_on == {"deploy_token"}
        assert sample_plan.get("grant_admin_operator").depends_on == {"deploy_token"}
        assert sample_plan.get("revoke_admin_deployer").depends_on == {
            "deploy_token",
            "grant_admin_operator",
        }

    def test_default_operations(self, sample_plan):
        assert sample_plan.get("deploy_token").operation == "deploy"
        assert sample_plan.get("grant_admin_operator").operation == "grantRole"
        assert sample_plan.get("revoke_admin_deployer").operation == "revokeRole"

    def test_contract_sources(self, sample_plan):
        assert set(sample_plan.contract_sources) == {"registry"}
        assert sample_plan.contracts["token"].produced_by == "deploy_token"
        assert not sample_plan.contracts["token"].is_resolved

    def test_planning_is_deterministic(self, sample_config, sample_workflow_document):
        first = DeploymentPlanner(sample_config).plan(parse_workflow(copy.deepcopy(sample_workflow_document)))
        second = DeploymentPlanner(sample_config).plan(parse_workflow(copy.deepcopy(sample_workflow_document)))

        assert first.order == second.order
        assert first.fingerprint() == second.fingerprint()
        assert first.to_dict() == second.to_dict()

    def test_ties_resolve_to_definition_order(self):
        workflow = box_workflow(
            [configure_step("c"), configure_step("a"), configure_step("b", depends_on=["c"])]
        )
        plan = DeploymentPlanner(DeploymentConfig()).plan(workflow)
        assert plan.order == ["c", "a", "b"]

    def test_dependency_declared_later_is_ordered_first(self):
        workflow = box_workflow([configure_step("first", depends_on=["second"]), configure_step("second")])
        plan = DeploymentPlanner(DeploymentConfig()).plan(workflow)
        assert plan.order == ["second", "first"]

    def test_cycle_detected(self):
        workflow = box_workflow(
            [configure_step("a", depends_on=["b"]), configure_step("b", depends_on=["a"])]
        )
        with pytest.raises(ConfigurationError, match="cycle") as exc_info:
            DeploymentPlanner(DeploymentConfig()).plan(workflow)
        assert exc_info.value.details["cycle"] == ["a", "b", "a"]

    def test_self_dependency_is_a_cycle(self):
        workflow = box_workflow([configure_step("a", depends_on=["a"])])
        with pytest.raises(ConfigurationError, match="cycle"):
            DeploymentPlanner(DeploymentConfig()).plan(workflow)

    def test_unknown_dependency(self):
        workflow = box_workflow([configure_step("a", depends_on=["ghost"])])
        with pytest.raises(ConfigurationError, match="unknown step 'ghost'"):
            DeploymentPlanner(DeploymentConfig()).plan(workflow)

    def test_unknown_output_reference(self):
        workflow = box_workflow([configure_step("a", params={"value": {"step": "ghost"}})])
        with pytest.raises(ConfigurationError, match="unknown step"):
            DeploymentPlanner(DeploymentConfig()).plan(workflow)

    def test_duplicate_step_ids(self):
        workflow = box_workflow([configure_step("a"), configure_step("a")])
        with pytest.raises(ConfigurationError, match="Duplicate"):
            DeploymentPlanner(DeploymentConfig()).plan(workflow)

    def test_unknown_target(self):
        workflow = box_workflow([{"id": "a", "kind": "configure", "target": "nowhere", "operation": "x"}])
        with pytest.raises(ConfigurationError, match="Unknown contract 'nowhere'"):
            DeploymentPlanner(DeploymentConfig()).plan(workflow)

    def test_contract_without_deploy_or_address(self):
        workflow = parse_workflow(
            {
                "name": "orphan",
                "contracts": {"token": {}},
                "steps": [{"id": "a", "kind": "configure", "target": "token", "operation": "x"}],
            }
        )
        with pytest.raises(ConfigurationError, match="neither an included deploy step"):
            DeploymentPlanner(DeploymentConfig()).plan(workflow)

    def test_contract_deployed_twice(self):
        workflow = parse_workflow(
            {
                "name": "twice",
                "contracts": {"token": {}},
                "steps": [
                    {"id": "one", "kind": "deploy", "target": "token"},
                    {"id": "two", "kind": "deploy", "target": "token"},
                ],
            }
        )
        with pytest.raises(ConfigurationError, match="deployed by both"):
            DeploymentPlanner(DeploymentConfig()).plan(workflow)

    def test_predicate_omits_step(self):
        workflow = box_workflow(
            [configure_step("always"), configure_step("optional", when={"env": "ENABLE_OPTIONAL"})]
        )
        plan = DeploymentPlanner(DeploymentConfig()).plan(workflow)
        assert plan.order == ["always"]
        assert plan.skipped_steps == ["optional"]

        enabled = DeploymentPlanner(DeploymentConfig(values={"ENABLE_OPTIONAL": "yes"})).plan(workflow)
        assert enabled.order == ["always", "optional"]
        assert enabled.skipped_steps == []

    def test_depending_on_omitted_step_fails(self):
        workflow = box_workflow(
            [
                configure_step("optional", when={"env": "ENABLE_OPTIONAL"}),
                configure_step("needs_optional", depends_on=["optional"]),
            ]
        )
        with pytest.raises(ConfigurationError, match="omitted by its predicate"):
            DeploymentPlanner(DeploymentConfig()).plan(workflow)

    def test_revoke_paired_with_non_grant(self, sample_config, sample_workflow_document):
        sample_workflow_document["steps"][3]["paired_with"] = "register_token"
        with pytest.raises(ConfigurationError, match="not a grant_role step"):
            DeploymentPlanner(sample_config).plan(parse_workflow(sample_workflow_document))

    def test_revoke_paired_with_different_role(self, sample_config, sample_workflow_document):
        sample_workflow_document["steps"][3]["params"]["role"] = "MINTER_ROLE"
        with pytest.raises(ConfigurationError, match="different roles"):
            DeploymentPlanner(sample_config).plan(parse_workflow(sample_workflow_document))

    def test_verify_target_must_exist(self, sample_config, sample_workflow_document):
        sample_workflow_document["verify"][0]["target"] = "ghost"
        with pytest.raises(ConfigurationError, match="verify section"):
            DeploymentPlanner(sample_config).plan(parse_workflow(sample_workflow_document))


class TestDeploymentPlan:
    """Test plan queries used while executing."""

    def test_ready_steps_follow_confirmations(self, sample_plan):
        assert [step.id for step in sample_plan.ready_steps()] == ["deploy_token"]

        sample_plan.get("deploy_token").transition(StepStatus.CONFIRMED)
        assert [step.id for step in sample_plan.ready_steps()] == [
            "register_token",
            "grant_admin_operator",
        ]

    def test_dependents_are_transitive(self, sample_plan):
        assert sample_plan.dependents_of("deploy_token") == {
            "register_token",
            "grant_admin_operator",
            "revoke_admin_deployer",
        }
        assert sample_plan.dependents_of("grant_admin_operator") == {"revoke_admin_deployer"}
        assert sample_plan.dependents_of("revoke_admin_deployer") == set()

    def test_get_unknown_step(self, sample_plan):
        with pytest.raises(ConfigurationError):
            sample_plan.get("ghost")
        assert sample_plan.find("ghost") is None

    def test_to_dict(self, sample_plan):
        data = sample_plan.to_dict()
        assert data["workflow"] == "token-rollout"
        assert data["order"] == sample_plan.order
        assert data["steps"][0]["kind"] == "deploy"
        assert data["steps"][3]["depends_on"] == ["deploy_token", "grant_admin_operator"]


class TestContractReference:
    """Test the write-once address cell."""

    def test_bind_once(self):
        reference = ContractReference(logical_name="token")
        reference.bind_address(CONTRACT_ADDRESS)
        assert reference.is_resolved
        assert str(reference) == f"token@{CONTRACT_ADDRESS}"

    def test_rebinding_same_address_is_idempotent(self):
        reference = ContractReference(logical_name="token")
        reference.bind_address(CONTRACT_ADDRESS)
        reference.bind_address(CONTRACT_ADDRESS.upper().replace("0X", "0x"))
        assert reference.address == CONTRACT_ADDRESS

    def test_rebinding_different_address_fails(self):
        reference = ContractReference(logical_name="token")
        reference.bind_address(CONTRACT_ADDRESS)
        with pytest.raises(ConfigurationError, match="already bound"):
            reference.bind_address("0x" + "cd" * 20)


class TestDeploymentStep:
    """Test step lifecycle transitions."""

    def test_forbidden_transition(self, sample_plan):
        step = sample_plan.get("deploy_token")
        step.transition(StepStatus.FAILED)
        assert step.is_terminal
        with pytest.raises(StepStateError):
            step.transition(StepStatus.SUBMITTED)

    def test_submitted_cannot_be_aborted(self, sample_plan):
        step = sample_plan.get("deploy_token")
        step.transition(StepStatus.SUBMITTED)
        with pytest.raises(StepStateError):
            step.transition(StepStatus.ABORTED)


class TestBundledWorkflows:
    """Test the workflows shipped with the package."""

    def test_bundled_names(self):
        assert list_bundled_workflows() == ["governance", "launchpad", "proxy-upgrade", "ve-token"]

    @pytest.mark.parametrize("name", ["governance", "launchpad", "proxy-upgrade", "ve-token"])
    def test_bundled_workflows_parse(self, name):
        workflow = load_bundled_workflow(name)
        assert workflow.name == name
        assert workflow.steps

    def test_unknown_bundled_workflow(self):
        with pytest.raises(ConfigurationError, match="Unknown workflow"):
            load_bundled_workflow("nonexistent")

    def test_launchpad_plan(self, launchpad_env):
        plan = DeploymentPlanner(DeploymentConfig(values=launchpad_env)).plan(load_bundled_workflow("launchpad"))

        assert plan.skipped_steps == ["grant_nft_minter_agent_factory"]
        order = plan.order
        assert order.index("deploy_ffactory") < order.index("deploy_frouter")
        assert order.index("deploy_frouter") < order.index("set_ffactory_router")
        assert order.index("grant_ffactory_admin_operator") < order.index("revoke_ffactory_admin_deployer")
        assert order.index("revoke_ffactory_admin_deployer") < order.index(
            "revoke_ffactory_default_admin_deployer"
        )
        assert plan.get("revoke_ffactory_default_admin_deployer").kind == StepKind.REVOKE_ROLE

    def test_launchpad_optional_minter_grant(self, launchpad_env):
        launchpad_env["GRANT_NFT_MINTER"] = "true"
        plan = DeploymentPlanner(DeploymentConfig(values=launchpad_env)).plan(load_bundled_workflow("launchpad"))

        assert plan.skipped_steps == []
        assert plan.get("grant_nft_minter_agent_factory").depends_on == {"deploy_agent_factory"}

    def test_ve_token_rotation_requires_flag(self):
        workflow = load_bundled_workflow("ve-token")
        plan = DeploymentPlanner(DeploymentConfig()).plan(workflow)
        assert set(plan.skipped_steps) == {
            "grant_default_admin_operator",
            "grant_admin_operator",
            "revoke_default_admin_deployer",
        }
