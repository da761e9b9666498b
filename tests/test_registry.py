"""Tests for automation parsing, trigger matching and save-time validation."""
import pytest

from automations.registry import AutomationRegistry, validate_automation
from automations.triggers import matches_trigger_config, normalize_trigger_type
from config.settings import AutomationConfig
from core.errors import AutomationValidationError
from models.schemas import (
    Automation, InboundEvent, SendMessageAction, TriggerConfig, UnknownAction,
)
from tests.conftest import make_automation


def nested_group(depth: int) -> dict:
    group = {"logic": "AND", "conditions": [{"field": "x", "operator": "is_set"}]}
    for _ in range(depth - 1):
        group = {"logic": "AND", "conditions": [group]}
    return group


class TestAutomationModel:
    def test_unnumbered_actions_take_list_order(self):
        automation = make_automation(actions=[
            {"type": "send_message", "text": "a"},
            {"type": "add_tag", "tag_name": "vip"},
        ])
        assert [a.ordinal for a in automation.actions] == [0, 1]

    def test_actions_sorted_by_ordinal(self):
        automation = make_automation(actions=[
            {"type": "add_tag", "tag_name": "vip", "ordinal": 1},
            {"type": "send_message", "text": "a", "ordinal": 0},
        ])
        assert [a.type for a in automation.actions] == ["send_message", "add_tag"]

    def test_gapped_ordinals_rejected(self):
        with pytest.raises(ValueError):
            make_automation(actions=[
                {"type": "send_message", "text": "a", "ordinal": 0},
                {"type": "send_message", "text": "b", "ordinal": 2},
            ])

    def test_legacy_params_shape(self):
        automation = make_automation(actions=[
            {"type": "send_message", "params": {"text": "hola"}},
        ])
        assert isinstance(automation.actions[0], SendMessageAction)
        assert automation.actions[0].text == "hola"

    def test_unknown_action_type_kept_as_fallback(self):
        automation = make_automation(actions=[{"type": "send_fax", "number": "1"}])
        action = automation.actions[0]
        assert isinstance(action, UnknownAction)
        assert action.type == "send_fax"

    def test_round_trips_through_json(self):
        automation = make_automation()
        restored = Automation.model_validate(automation.model_dump(mode="json"))
        assert restored.conditions == automation.conditions
        assert restored.actions[0].template_name == "high_value_thanks"


class TestTriggers:
    def test_alias_normalized(self):
        assert normalize_trigger_type("order.stage_changed") == "stage.changed"
        assert normalize_trigger_type("tag.assigned") == "tag.assigned"

    def test_stage_filter(self):
        event = InboundEvent(type="stage.changed", workspace_id="ws1", payload={"stage": "won"})
        assert matches_trigger_config("stage.changed", TriggerConfig(stage_id="won"), event)
        assert not matches_trigger_config("stage.changed", TriggerConfig(stage_id="lost"), event)
        assert matches_trigger_config("stage.changed", TriggerConfig(), event)

    def test_tag_filter(self):
        event = InboundEvent(type="tag.assigned", workspace_id="ws1", payload={"tag_id": "t1"})
        assert matches_trigger_config("tag.assigned", TriggerConfig(tag_id="t1"), event)
        assert not matches_trigger_config("tag.assigned", TriggerConfig(tag_id="t2"), event)

    def test_keyword_filter(self):
        event = InboundEvent(
            type="message.keyword_match", workspace_id="ws1",
            payload={"message_content": "Hola, quiero INFO del pack"},
        )
        assert matches_trigger_config("message.keyword_match", TriggerConfig(keywords=["info"]), event)
        assert not matches_trigger_config("message.keyword_match", TriggerConfig(keywords=["precio"]), event)


class TestValidateAutomation:
    def test_valid_automation(self):
        assert validate_automation(make_automation(), AutomationConfig()) == []

    def test_too_many_actions(self):
        automation = make_automation(actions=[
            {"type": "send_message", "text": str(i)} for i in range(11)
        ])
        errors = validate_automation(automation, AutomationConfig())
        assert any("exceeds limit" in e for e in errors)

    def test_no_actions(self):
        errors = validate_automation(make_automation(actions=[]), AutomationConfig())
        assert "automation has no actions" in errors

    def test_condition_depth_limit(self):
        limits = AutomationConfig(max_condition_depth=3)
        assert validate_automation(make_automation(conditions=nested_group(3)), limits) == []
        errors = validate_automation(make_automation(conditions=nested_group(4)), limits)
        assert any("depth" in e for e in errors)

    def test_condition_fanout_limit(self):
        conditions = {"logic": "OR", "conditions": [
            {"field": f"f{i}", "operator": "is_set"} for i in range(21)
        ]}
        errors = validate_automation(make_automation(conditions=conditions), AutomationConfig())
        assert any("fan-out" in e for e in errors)

    def test_unknown_action_rejected(self):
        errors = validate_automation(
            make_automation(actions=[{"type": "send_fax"}]), AutomationConfig(),
        )
        assert any("unsupported type 'send_fax'" in e for e in errors)

    def test_delay_cap(self):
        automation = make_automation(actions=[
            {"type": "send_message", "text": "later", "delay": {"amount": 31, "unit": "days"}},
        ])
        errors = validate_automation(automation, AutomationConfig())
        assert any("delay exceeds 30 days" in e for e in errors)

    def test_unknown_trigger(self):
        errors = validate_automation(make_automation(trigger_type="order.shipped"), AutomationConfig())
        assert any("unknown trigger" in e for e in errors)


class TestAutomationRegistry:
    @pytest.mark.asyncio
    async def test_save_normalizes_trigger(self, store):
        registry = AutomationRegistry(store, AutomationConfig())
        saved = await registry.save(make_automation(trigger_type="order.stage_changed"))
        assert saved.trigger_type == "stage.changed"
        assert await store.get_automation("ws1", saved.id) is not None

    @pytest.mark.asyncio
    async def test_save_rejects_invalid(self, store):
        registry = AutomationRegistry(store, AutomationConfig())
        with pytest.raises(AutomationValidationError) as exc:
            await registry.save(make_automation(actions=[]))
        assert exc.value.errors == ["automation has no actions"]
        assert await store.list_automations("ws1") == []

    @pytest.mark.asyncio
    async def test_workspace_cap(self, store):
        registry = AutomationRegistry(store, AutomationConfig(max_automations_per_workspace=2))
        await registry.save(make_automation(id="a1"))
        await registry.save(make_automation(id="a2"))
        with pytest.raises(AutomationValidationError):
            await registry.save(make_automation(id="a3"))
        # Updating an existing automation is not blocked by the cap.
        await registry.save(make_automation(id="a2", name="renamed"))

    @pytest.mark.asyncio
    async def test_load_from_config_skips_invalid(self, store):
        registry = AutomationRegistry(store, AutomationConfig())
        raw = [
            make_automation(id="ok").model_dump(mode="json"),
            {"id": "bad", "workspace_id": "ws1", "name": "bad", "trigger_type": "stage.changed", "actions": []},
            {"id": "broken"},
        ]
        assert await registry.load_from_config(raw) == 1

    @pytest.mark.asyncio
    async def test_set_enabled(self, store):
        registry = AutomationRegistry(store, AutomationConfig())
        await registry.save(make_automation())
        toggled = await registry.set_enabled("ws1", "auto_high_value", False)
        assert toggled.enabled is False
        assert await store.list_enabled_automations("ws1", "stage.changed") == []
