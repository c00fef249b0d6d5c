"""
Tests for policy reconciliation against node instances.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from deployment_handler.cloudify.client import CloudifyClient
from deployment_handler.cloudify.execution_queue import ExecutionQueue
from deployment_handler.cloudify.models import NodeInstance
from deployment_handler.errors import DispatcherError
from deployment_handler.policy import reconciler as reconciler_module
from deployment_handler.policy.models import POLICY_UPDATE_OPERATION, PolicyUpdateMessage, policy_version
from deployment_handler.policy.reconciler import PolicyCollector, PolicyReconciler, filter_matches
from deployment_handler.tasks import BackgroundWork

pytestmark = pytest.mark.unit


def policy(policy_id, version, name=None, conditions=None, persistent=None):
    result = {
        "policy_id": policy_id,
        "policy_body": {
            "policyName": name or f"{policy_id}.1.xml",
            "policyVersion": version,
            "matchingConditions": conditions or {},
        },
    }
    if persistent is not None:
        result["policy_persistent"] = persistent
    return result


def policy_filter(filter_id, policy_name, **conditions):
    return {filter_id: {"policy_filter_id": filter_id, "policy_filter": {"policyName": policy_name, **conditions}}}


def node_instance(instance_id, deployment_id, policies=None, policy_filters=None):
    runtime_properties = {}
    if policies is not None:
        runtime_properties["policies"] = policies
    if policy_filters is not None:
        runtime_properties["policy_filters"] = policy_filters
    return NodeInstance(id=instance_id, deployment_id=deployment_id, runtime_properties=runtime_properties)


def collect(message, *node_instances, busy=()):
    collector = PolicyCollector(PolicyUpdateMessage.model_validate(message), lambda dep: dep in busy)
    collector.collect(list(node_instances))
    return collector.plans


class TestMessage:
    def test_id_maps_become_sets(self):
        message = PolicyUpdateMessage.model_validate(
            {
                "latest_policies": {"p1": policy("p1", 1), "p2": None},
                "removed_policies": {"p3": True, "p4": False},
                "policy_filter_matches": {"p1": {"f1": True}},
                "errored_scopes": None,
            }
        )

        assert list(message.latest_policies) == ["p1"]
        assert message.removed_policies == {"p3"}
        assert message.policy_filter_matches == {"p1": {"f1"}}
        assert message.errored_scopes == []

    def test_removed_policies_as_list(self):
        message = PolicyUpdateMessage.model_validate({"removed_policies": ["p1", "p2"]})

        assert message.removed_policies == {"p1", "p2"}

    @pytest.mark.parametrize(
        "candidate,expected",
        [
            (policy("p", 5), 5.0),
            (policy("p", "5"), 5.0),
            (policy("p", "2.5"), 2.5),
            (policy("p", "five"), None),
            (policy("p", None), None),
            (policy("p", True), None),
            ({"policy_id": "p"}, None),
            (None, None),
        ],
    )
    def test_policy_version(self, candidate, expected):
        assert policy_version(candidate) == expected


class TestUpdates:
    def test_equal_versions_are_a_no_op(self):
        plans = collect(
            {"latest_policies": {"p1": policy("p1", 5)}},
            node_instance("n1", "d1", policies={"p1": policy("p1", 5)}),
        )

        assert plans == {}

    def test_newer_version_is_updated(self):
        latest = policy("p1", 6)
        plans = collect(
            {"latest_policies": {"p1": latest}},
            node_instance("n1", "d1", policies={"p1": policy("p1", 5)}),
        )

        plan = plans["d1"]
        assert plan.updated_policies == {"p1": latest}
        assert plan.node_instance_ids == ["n1"]
        assert plan.operation_kwargs() == {
            "updated_policies": [latest],
            "added_policies": {},
            "removed_policies": [],
        }

    def test_busy_deployment_gets_equal_versions_again(self):
        plans = collect(
            {"latest_policies": {"p1": policy("p1", 5)}},
            node_instance("n1", "d1", policies={"p1": policy("p1", 5)}),
            busy={"d1"},
        )

        assert plans["d1"].is_deployment_busy
        assert list(plans["d1"].updated_policies) == ["p1"]

    def test_version_compared_as_number(self):
        plans = collect(
            {"latest_policies": {"p1": policy("p1", "10"), "p2": policy("p2", "abc")}},
            node_instance("n1", "d1", policies={"p1": policy("p1", "9"), "p2": policy("p2", 1)}),
        )

        assert list(plans["d1"].updated_policies) == ["p1"]

    def test_instances_without_policy_state_are_ignored(self):
        plans = collect({"latest_policies": {"p1": policy("p1", 5)}}, node_instance("n1", "d1"))

        assert plans == {}

    def test_one_plan_per_deployment(self):
        plans = collect(
            {"latest_policies": {"p1": policy("p1", 6)}},
            node_instance("n1", "d1", policies={"p1": policy("p1", 5)}),
            node_instance("n2", "d1", policies={"p1": policy("p1", 5)}),
            node_instance("n3", "d2", policies={"p1": policy("p1", 6)}),
        )

        assert list(plans) == ["d1"]
        assert plans["d1"].node_instance_ids == ["n1", "n2"]


class TestRemovals:
    def test_removal_wins_over_update(self):
        plans = collect(
            {"latest_policies": {"p1": policy("p1", 6)}, "removed_policies": ["p1"]},
            node_instance("n1", "d1", policies={"p1": policy("p1", 5)}),
        )

        plan = plans["d1"]
        assert plan.removed_policy_ids == ["p1"]
        assert plan.updated_policies == {}

    @pytest.mark.parametrize("busy", [set(), {"d1"}])
    def test_removal_wins_over_filter_match(self, busy):
        plans = collect(
            {"latest_policies": {"p1": policy("p1", 6)}, "removed_policies": {"p1": True}},
            node_instance(
                "n1",
                "d1",
                policies={"p1": policy("p1", 5)},
                policy_filters=policy_filter("f1", "p1.*"),
            ),
            busy=busy,
        )

        plan = plans["d1"]
        assert plan.removed_policy_ids == ["p1"]
        assert plan.added_policies == {}
        assert plan.updated_policies == {}

    def test_removed_policy_is_never_added_by_filters(self):
        plans = collect(
            {"latest_policies": {"p1": policy("p1", 6)}, "removed_policies": ["p1"]},
            node_instance("n1", "d1", policies={"p2": policy("p2", 1)}, policy_filters=policy_filter("f1", "p1.*")),
            node_instance("n2", "d1", policies={"p1": policy("p1", 5)}),
        )

        assert plans["d1"].added_policies == {}
        assert plans["d1"].removed_policy_ids == ["p1"]

    def test_unmatched_filters_remove_non_persistent_policies(self):
        plans = collect(
            {
                "latest_policies": {"p2": policy("p2", 1)},
                "policy_filter_matches": {"p2": ["f1"], "p3": ["f9"]},
            },
            node_instance(
                "n1",
                "d1",
                policies={
                    "p1": policy("p1", 1),
                    "p2": policy("p2", 1),
                    "p3": policy("p3", 1),
                    "p4": policy("p4", 1, persistent=True),
                },
                policy_filters=policy_filter("f1", "nothing-matches-this"),
            ),
        )

        assert sorted(plans["d1"].removed_policy_ids) == ["p1", "p3"]

    def test_catch_up_removes_policies_gone_from_scope(self):
        plans = collect(
            {
                "catch_up": True,
                "latest_policies": {"DCAE.Config_kept": policy("DCAE.Config_kept", 1)},
                "errored_policies": ["DCAE.Config_errored"],
                "errored_scopes": ["DCAE.Config_bad"],
                "scope_prefixes": ["DCAE.Config_"],
            },
            node_instance(
                "n1",
                "d1",
                policies={
                    "DCAE.Config_gone": policy("DCAE.Config_gone", 1),
                    "DCAE.Config_kept": policy("DCAE.Config_kept", 1),
                    "DCAE.Config_errored": policy("DCAE.Config_errored", 1),
                    "DCAE.Config_bad_one": policy("DCAE.Config_bad_one", 1),
                    "other.policy": policy("other.policy", 1),
                },
            ),
        )

        assert plans["d1"].removed_policy_ids == ["DCAE.Config_gone"]

    def test_catch_up_without_flag_keeps_policies(self):
        plans = collect(
            {"scope_prefixes": ["DCAE.Config_"]},
            node_instance("n1", "d1", policies={"DCAE.Config_gone": policy("DCAE.Config_gone", 1)}),
        )

        assert plans == {}


class TestFilters:
    def test_filter_adds_policy(self):
        latest = policy("p1", 1, name="DCAE.Config_p1.1.xml")
        plans = collect(
            {"latest_policies": {"p1": latest}},
            node_instance("n1", "d1", policies={}, policy_filters=policy_filter("f1", "DCAE.Config_.*")),
        )

        assert plans["d1"].added_policies == {"f1": {"policy_filter_id": "f1", "policies": {"p1": latest}}}

    def test_policy_added_under_first_matching_filter_only(self):
        filters = {**policy_filter("f1", "p1.*"), **policy_filter("f2", "p1")}
        plans = collect(
            {"latest_policies": {"p1": policy("p1", 1)}},
            node_instance("n1", "d1", policy_filters=filters),
        )

        assert list(plans["d1"].added_policies) == ["f1"]

    def test_deployed_policy_not_added_again(self):
        plans = collect(
            {"latest_policies": {"p1": policy("p1", 1)}},
            node_instance("n1", "d1", policies={"p1": policy("p1", 1)}, policy_filters=policy_filter("f1", "p1.*")),
        )

        assert plans == {}

    def test_invalid_pattern_is_logged_and_skipped(self, monkeypatch):
        log_error = MagicMock()
        monkeypatch.setattr(reconciler_module, "log_error", log_error)

        plans = collect(
            {"latest_policies": {"p1": policy("p1", 1)}},
            node_instance("n1", "d1", policy_filters=policy_filter("f1", "([")),
        )

        assert plans == {}
        error = log_error.call_args.args[0]
        assert error.log_code == 553
        assert "f1" in error.message

    def test_policies_without_version_or_name_are_not_added(self):
        nameless = policy("p2", 1)
        nameless["policy_body"]["policyName"] = ""
        plans = collect(
            {"latest_policies": {"p1": policy("p1", "n/a"), "p2": nameless}},
            node_instance("n1", "d1", policy_filters=policy_filter("f1", ".*")),
        )

        assert plans == {}

    def test_latest_policy_with_malformed_body_is_skipped(self):
        numeric_name = policy("p1", 1)
        numeric_name["policy_body"]["policyName"] = 42
        listed_conditions = policy("p2", 1)
        listed_conditions["policy_body"]["matchingConditions"] = ["ONAPName"]
        plans = collect(
            {"latest_policies": {"p1": numeric_name, "p2": listed_conditions, "p3": policy("p3", 1)}},
            node_instance("n1", "d1", policy_filters=policy_filter("f1", ".*")),
        )

        assert list(plans["d1"].added_policies["f1"]["policies"]) == ["p3"]

    @pytest.mark.parametrize(
        "conditions,expected",
        [
            ({}, True),
            ({"onapName": "DCAE"}, True),
            ({"onapName": "SDNC"}, False),
            ({"configName": "alert"}, True),
            ({"configName": "other"}, False),
            ({"configAttributes": {"key1": "value1"}}, True),
            ({"configAttributes": {"key1": "value2"}}, False),
            ({"configAttributes": {"missing": "x"}}, False),
        ],
    )
    def test_filter_conditions(self, conditions, expected):
        matching_conditions = {"ONAPName": "DCAE", "ConfigName": "alert", "key1": "value1"}

        result = filter_matches(
            {"policyName": "DCAE.Config_.*", **conditions}, "p1", "DCAE.Config_alert.1.xml", matching_conditions
        )

        assert result is expected

    def test_literal_policy_id_matches(self):
        assert filter_matches({"policyName": "p1"}, "p1", "unrelated-name", {})


@pytest.fixture
def mock_client():
    return MagicMock(spec=CloudifyClient)


@pytest.fixture
def mock_queue():
    queue = MagicMock(spec=ExecutionQueue)
    queue.is_deployment_busy = MagicMock(return_value=False)
    queue.execute_operation = MagicMock()
    return queue


@pytest.fixture
def audit(monkeypatch):
    recorder = MagicMock()
    monkeypatch.setattr(reconciler_module, "log_audit", recorder)
    return recorder


def serve_pages(*pages):
    async def list_node_instances(ctx, on_batch, start_offset=0):
        total = 0
        for page in pages:
            on_batch(page)
            total += len(page)
        return total

    return AsyncMock(side_effect=list_node_instances)


class TestMalformedPolicyState:
    @pytest.fixture
    def log_error(self, monkeypatch):
        recorder = MagicMock()
        monkeypatch.setattr(reconciler_module, "log_error", recorder)
        return recorder

    def test_undecodable_entries_are_left_out(self):
        instance = node_instance(
            "n1",
            "d1",
            policies={"p1": "garbage", "p2": policy("p2", 5)},
            policy_filters={"f1": {"policy_filter": {"onapName": "DCAE"}}, **policy_filter("f2", "p.*")},
        )

        assert list(instance.policies) == ["p2"]
        assert list(instance.policy_filters) == ["f2"]
        assert len(instance.policy_state.errors) == 2
        assert instance.policy_state.errors[1].startswith("policy_filter f1: policy_filter.policyName")

    def test_non_object_policy_map(self):
        instance = node_instance("n1", "d1", policies=["p1"])

        assert instance.policies == {}
        assert not instance.has_policy_state
        assert instance.policy_state.errors == ["policy map is list, expected an object"]

    def test_malformed_entries_are_logged_and_valid_ones_reconciled(self, log_error):
        latest = policy("p2", 6)
        plans = collect(
            {"latest_policies": {"p2": latest}},
            node_instance(
                "n1",
                "d1",
                policies={"p1": 7, "p2": policy("p2", 5)},
                policy_filters={"f1": {"policy_filter_id": "f1", "policy_filter": "all"}},
            ),
        )

        assert plans["d1"].updated_policies == {"p2": latest}
        assert log_error.call_count == 2
        for call in log_error.call_args_list:
            error = call.args[0]
            assert error.status == 502
            assert error.log_code == 502
            assert error.target == "cloudify-manager"
            assert "node instance n1 of deployment d1" in error.message

    def test_instance_with_only_malformed_state_gets_no_plan(self, log_error):
        plans = collect(
            {"latest_policies": {"p1": policy("p1", 1)}},
            node_instance("n1", "d1", policy_filters={"f1": {"policy_filter": {"policyName": None}}}),
        )

        assert plans == {}
        log_error.assert_called_once()

class TestReconciler:
    @pytest.mark.asyncio
    async def test_dispatches_once_per_deployment(self, mock_client, mock_queue, audit, ctx):
        mock_client.list_node_instances = serve_pages(
            [node_instance("n1", "d1", policies={"p1": policy("p1", 1)})],
            [
                node_instance("n2", "d1", policies={"p1": policy("p1", 1)}),
                node_instance("n3", "d2", policies={"p2": policy("p2", 1)}),
            ],
        )
        message = PolicyUpdateMessage.model_validate(
            {"latest_policies": {"p1": policy("p1", 2)}, "removed_policies": ["p2"]}
        )

        plans = await PolicyReconciler(mock_client, mock_queue).reconcile(ctx, message)

        assert sorted(plans) == ["d1", "d2"]
        assert mock_queue.execute_operation.call_count == 2
        first = mock_queue.execute_operation.call_args_list[0]
        assert first.args == (
            ctx,
            "d1",
            POLICY_UPDATE_OPERATION,
            {"updated_policies": [policy("p1", 2)], "added_policies": {}, "removed_policies": []},
            ["n1", "n2"],
        )
        second = mock_queue.execute_operation.call_args_list[1]
        assert second.args[1] == "d2"
        assert second.args[3]["removed_policies"] == ["p2"]
        assert "deployments[2]" in audit.call_args.args[2]

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, mock_client, mock_queue, audit, ctx):
        mock_client.list_node_instances = serve_pages([node_instance("n1", "d1", policies={"p1": policy("p1", 1)})])
        message = PolicyUpdateMessage.model_validate({"latest_policies": {"p1": policy("p1", 1)}})

        plans = await PolicyReconciler(mock_client, mock_queue).reconcile(ctx, message)

        assert plans == {}
        mock_queue.execute_operation.assert_not_called()
        audit.assert_called_once_with(ctx, 200, "no updated policies to apply to deployments")

    @pytest.mark.asyncio
    async def test_listing_failure_dispatches_nothing(self, mock_client, mock_queue, audit, monkeypatch, ctx):
        log_error = MagicMock()
        monkeypatch.setattr(reconciler_module, "log_error", log_error)

        async def fail_after_first_page(ctx, on_batch, start_offset=0):
            on_batch([node_instance("n1", "d1", policies={"p1": policy("p1", 1)})])
            raise DispatcherError("Error communicating with cloudify-manager", status=504)

        mock_client.list_node_instances = AsyncMock(side_effect=fail_after_first_page)
        message = PolicyUpdateMessage.model_validate({"latest_policies": {"p1": policy("p1", 2)}})

        plans = await PolicyReconciler(mock_client, mock_queue).reconcile(ctx, message)

        assert plans == {}
        mock_queue.execute_operation.assert_not_called()
        log_error.assert_called_once()
        assert audit.call_args.args[1] == 504

    @pytest.mark.asyncio
    async def test_busy_state_comes_from_queue(self, mock_client, mock_queue, audit, ctx):
        mock_queue.is_deployment_busy.side_effect = lambda deployment_id: deployment_id == "d1"
        mock_client.list_node_instances = serve_pages(
            [
                node_instance("n1", "d1", policies={"p1": policy("p1", 1)}),
                node_instance("n2", "d2", policies={"p1": policy("p1", 1)}),
            ]
        )
        message = PolicyUpdateMessage.model_validate({"latest_policies": {"p1": policy("p1", 1)}})

        plans = await PolicyReconciler(mock_client, mock_queue).reconcile(ctx, message)

        assert list(plans) == ["d1"]

    @pytest.mark.asyncio
    async def test_start_update_runs_in_background(self, mock_client, mock_queue, audit, ctx):
        mock_client.list_node_instances = serve_pages([])
        background = BackgroundWork()
        reconciler = PolicyReconciler(mock_client, mock_queue, background)

        reconciler.start_update(ctx, PolicyUpdateMessage())
        await background.join()

        mock_client.list_node_instances.assert_awaited_once()
        audit.assert_called_once()


class TestComponentPolicies:
    @pytest.mark.asyncio
    async def test_collects_policies_and_filters(self, mock_client, mock_queue, audit, ctx):
        mock_client.list_node_instances = serve_pages(
            [
                node_instance("n1", "d1", policies={"p1": policy("p1", 1)}, policy_filters=policy_filter("f1", ".*")),
                node_instance("n2", "d1"),
            ],
            [node_instance("n3", "d2", policies={"p2": policy("p2", 3)})],
        )

        status, result = await PolicyReconciler(mock_client, mock_queue).get_component_policies(ctx)

        assert status == 200
        assert result["requestID"] == "req-1"
        assert result["status"] == 200
        assert result["message"] == "got 3 node_instances"
        assert result["node_instance_ids"] == [
            {"node_instance_id": "n1", "deployment_id": "d1", "policies_count": 1, "policy_filters_count": 1},
            {"node_instance_id": "n3", "deployment_id": "d2", "policies_count": 1, "policy_filters_count": 0},
        ]
        assert [p["policy_id"] for p in result["component_policies"]] == ["p1", "p2"]
        assert result["component_policies"][1]["component_id"] == "n3"
        assert result["component_policy_filters"][0]["policy_filter_id"] == "f1"
        assert "started" in result and "ended" in result

    @pytest.mark.asyncio
    async def test_failure_reported_in_body(self, mock_client, mock_queue, audit, monkeypatch, ctx):
        monkeypatch.setattr(reconciler_module, "log_error", MagicMock())
        mock_client.list_node_instances = AsyncMock(side_effect=DispatcherError("cloudify down", status=504))

        status, result = await PolicyReconciler(mock_client, mock_queue).get_component_policies(ctx)

        assert status == 504
        assert result["status"] == 504
        assert result["message"] == "cloudify down"
        assert result["component_policies"] == []
