"""Tests for template resolution and event context building."""
from models.schemas import InboundEvent
from utils.variables import build_event_context, resolve_params, resolve_template


class TestResolveTemplate:
    def test_substitutes_paths(self):
        ctx = {"contact": {"name": "Ana"}, "order": {"total_value": 150000.0}}
        rendered = resolve_template("Hola {{contact.name}}, total {{ order.total_value }}", ctx)
        assert rendered.text == "Hola Ana, total 150000"
        assert rendered.unresolved == []

    def test_unresolved_renders_empty_and_is_reported(self):
        rendered = resolve_template("Hi {{contact.name}} from {{contact.city}}", {"contact": {"name": "Ana"}})
        assert rendered.text == "Hi Ana from "
        assert rendered.unresolved == ["contact.city"]

    def test_unresolved_reported_once(self):
        rendered = resolve_template("{{x}} {{x}}", {})
        assert rendered.unresolved == ["x"]

    def test_text_without_placeholders_untouched(self):
        assert resolve_template("plain {text}", {}).text == "plain {text}"


class TestResolveParams:
    def test_recurses_through_dicts_and_lists(self):
        params = {
            "template_name": "thanks",
            "variables": {"name": "{{contact.name}}", "missing": "{{contact.phone}}"},
            "lines": ["{{order.id}}", 3],
        }
        ctx = {"contact": {"name": "Ana"}, "order": {"id": "ord_1"}}
        resolved, unresolved = resolve_params(params, ctx)
        assert resolved["variables"] == {"name": "Ana", "missing": ""}
        assert resolved["lines"] == ["ord_1", 3]
        assert unresolved == ["contact.phone"]

    def test_non_string_values_pass_through(self):
        resolved, unresolved = resolve_params({"n": 5, "flag": True, "none": None}, {})
        assert resolved == {"n": 5, "flag": True, "none": None}
        assert unresolved == []


class TestBuildEventContext:
    def test_flat_payload_mapped_into_namespaces(self):
        event = InboundEvent(
            id="evt_1", type="stage.changed", workspace_id="ws1",
            order_id="ord_1", conversation_id="conv_1",
            payload={"stage": "won", "total_value": 150000, "contact_name": "Ana"},
        )
        ctx = build_event_context(event)
        assert ctx["order"]["id"] == "ord_1"
        assert ctx["order"]["stage_id"] == "won"
        assert ctx["order"]["total_value"] == 150000
        assert ctx["contact"]["name"] == "Ana"
        assert ctx["conversation"]["id"] == "conv_1"
        assert ctx["workspace"]["id"] == "ws1"
        assert ctx["event"]["type"] == "stage.changed"
        # Raw payload keys stay reachable.
        assert ctx["stage"] == "won"

    def test_nested_namespace_payload_merged(self):
        event = InboundEvent(
            type="message.received", workspace_id="ws1",
            payload={"message": "quiero el pack", "contact": {"name": "Luis"}},
        )
        ctx = build_event_context(event)
        assert ctx["message"]["content"] == "quiero el pack"
        assert ctx["contact"]["name"] == "Luis"

    def test_enrichment_merged_last(self):
        event = InboundEvent(
            type="order.created", workspace_id="ws1", order_id="ord_1",
            payload={"total_value": 10},
        )
        ctx = build_event_context(event, {"order": {"total_value": 99, "pipeline_id": "p1"}})
        assert ctx["order"]["total_value"] == 99
        assert ctx["order"]["pipeline_id"] == "p1"
        assert ctx["order"]["id"] == "ord_1"

    def test_cascade_depth_exposed(self):
        event = InboundEvent(type="tag.assigned", workspace_id="ws1", cascade_depth=2)
        assert build_event_context(event)["event"]["cascade_depth"] == 2
