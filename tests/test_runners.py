"""Tests for the runner registry and the built-in runners."""

import json

import httpx
import pytest

from flow_orchestra.builtin_runners import (
    HttpRequestRunner,
    agent_state_runner,
    data_converter_runner,
    get_path,
    safe_json,
    split_runner,
    switch_runner,
)
from flow_orchestra.errors import ValidationError
from flow_orchestra.graph import NodeSpec
from flow_orchestra.runners import CallableRunner, PassThroughRunner, RunnerRegistry, default_registry


def _node(subtype, config=None, **kwargs):
    return NodeSpec(id=kwargs.pop("id", "n"), subtype=subtype, config=config or {}, **kwargs)


class TestRegistry:
    """Subtype lookup and registration."""

    def test_unknown_subtype_uses_pass_through(self):
        registry = RunnerRegistry()
        assert isinstance(registry.lookup("nope"), PassThroughRunner)
        assert isinstance(registry.lookup(None), PassThroughRunner)

    @pytest.mark.asyncio
    async def test_pass_through_output(self):
        node = _node("mystery", {"k": 1})
        output = await PassThroughRunner().execute(node, {"x": 1})
        assert output == {"nodeId": "n", "subtype": "mystery", "input": {"x": 1}, "config": {"k": 1}}

    @pytest.mark.asyncio
    async def test_register_plain_callables(self):
        registry = RunnerRegistry()
        registry.register("sync", lambda node, payload: payload * 2)

        async def async_fn(node, payload):
            return payload + 1

        registry.register("async", async_fn)

        assert isinstance(registry.lookup("sync"), CallableRunner)
        assert await registry.lookup("sync").execute(_node("sync"), 21) == 42
        assert await registry.lookup("async").execute(_node("async"), 41) == 42
        assert registry.subtypes() == ["async", "sync"]
        assert "sync" in registry
        assert "other" not in registry

    @pytest.mark.asyncio
    async def test_decorator_registers_every_subtype(self):
        registry = RunnerRegistry()

        @registry.runner("slack-send", "slack-post")
        async def slack(node, payload):
            return {"sent": node.config.get("channel")}

        assert registry.subtypes() == ["slack-post", "slack-send"]
        assert await registry.lookup("slack-post").execute(_node("slack-post", {"channel": "#ops"}), {}) == {"sent": "#ops"}

    def test_copy_is_independent(self):
        registry = RunnerRegistry()
        registry.register("a", lambda node, payload: None)
        clone = registry.copy()
        clone.register("b", lambda node, payload: None)

        assert "b" in clone
        assert "b" not in registry

    def test_default_registry_has_builtins(self):
        registry = default_registry()
        for subtype in ("switch", "condition", "split", "split-items", "http-request",
                        "data-converter", "file-export", "agent-state", "scheduler"):
            assert subtype in registry


def test_safe_json():
    assert safe_json('{"a": 1}', {}) == {"a": 1}
    assert safe_json("not json", {"fallback": True}) == {"fallback": True}
    assert safe_json(None, []) == []
    assert safe_json({"a": 1}, {}) == {"a": 1}


def test_get_path():
    payload = {"order": {"items": [{"sku": "A"}, {"sku": "B"}]}}
    assert get_path(payload, "order.items.1.sku") == "B"
    assert get_path(payload, "order.items.-1.sku") == "B"
    assert get_path(payload, "order.missing", "dflt") == "dflt"
    assert get_path(payload, "order.items.9", "dflt") == "dflt"
    assert get_path(payload, "order.items.²", "dflt") == "dflt"
    assert get_path(payload, "order.items.first", "dflt") == "dflt"
    assert get_path(payload, None) is payload


class TestSwitchRunner:
    @pytest.mark.asyncio
    async def test_switch_uses_value_as_tag(self):
        output = await switch_runner(_node("switch", {"field": "status"}), {"status": "paid"})
        assert output["__branch"] == "paid"
        assert output["key"] == "paid"
        assert output["input"] == {"status": "paid"}

    @pytest.mark.asyncio
    async def test_switch_missing_value_is_default(self):
        output = await switch_runner(_node("switch", {"field": "status"}), {})
        assert output["__branch"] == "default"
        assert output["key"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operator,value,amount,expected", [
        (">", 100, 250, "true"),
        (">", 100, 50, "false"),
        ("==", 50, 50, "true"),
        ("!=", 50, 50, "false"),
        ("<=", 50, 50, "true"),
    ])
    async def test_operator_comparison(self, operator, value, amount, expected):
        node = _node("condition", {"field": "amount", "operator": operator, "value": value})
        output = await switch_runner(node, {"amount": amount})
        assert output["__branch"] == expected

    @pytest.mark.asyncio
    async def test_contains_and_exists(self):
        node = _node("condition", {"field": "tags", "operator": "contains", "value": "vip"})
        assert (await switch_runner(node, {"tags": ["vip", "eu"]}))["__branch"] == "true"

        node = _node("condition", {"field": "email", "operator": "exists"})
        assert (await switch_runner(node, {"email": "a@b.c"}))["__branch"] == "true"
        assert (await switch_runner(node, {}))["__branch"] == "false"

    @pytest.mark.asyncio
    async def test_incomparable_values_are_false(self):
        node = _node("condition", {"field": "amount", "operator": ">", "value": 10})
        assert (await switch_runner(node, {"amount": "lots"}))["__branch"] == "false"

    @pytest.mark.asyncio
    async def test_condition_without_operator_tests_truthiness(self):
        node = _node("condition", {"field": "active"})
        assert (await switch_runner(node, {"active": 1}))["__branch"] == "true"
        assert (await switch_runner(node, {"active": ""}))["__branch"] == "false"
        assert (await switch_runner(node, {}))["__branch"] == "false"

    @pytest.mark.asyncio
    async def test_unknown_operator(self):
        node = _node("condition", {"field": "a", "operator": "~="})
        with pytest.raises(ValidationError, match="Unknown operator"):
            await switch_runner(node, {"a": 1})


class TestSplitRunner:
    @pytest.mark.asyncio
    async def test_split_field(self):
        output = await split_runner(_node("split", {"field": "rows"}), {"rows": [1, 2, 3]})
        assert output == {"__fanOut": True, "items": [1, 2, 3]}

    @pytest.mark.asyncio
    async def test_split_whole_input(self):
        assert (await split_runner(_node("split"), ["a", "b"]))["items"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_split_missing_and_scalar(self):
        assert (await split_runner(_node("split", {"field": "rows"}), {}))["items"] == []
        assert (await split_runner(_node("split", {"field": "row"}), {"row": "x"}))["items"] == ["x"]


class TestDataConverter:
    @pytest.mark.asyncio
    async def test_csv_export(self):
        node = _node("data-converter", {"outputFormat": "csv", "fileName": "people.csv"})
        output = await data_converter_runner(node, [{"name": "Ada", "age": 36}, {"name": "Alan", "city": "London"}])

        assert output["fileName"] == "people.csv"
        export = output["exports"][0]
        assert export["format"] == "csv"
        assert export["data"] == "name,age,city\nAda,36,\nAlan,,London"
        assert output["preview"] == export["data"]

    @pytest.mark.asyncio
    async def test_json_export_of_custom_data(self):
        node = _node("data-converter", {"customData": '{"a": [1, 2]}'})
        output = await data_converter_runner(node, {"ignored": True})

        assert output["fileName"] == "export.json"
        assert json.loads(output["exports"][0]["data"]) == {"a": [1, 2]}

    @pytest.mark.asyncio
    async def test_file_export_unwraps_data(self):
        node = _node("file-export", {"format": "txt"})
        output = await data_converter_runner(node, {"data": "hello"})
        assert output["exports"][0] == {"format": "txt", "filename": "export.txt", "data": "hello"}


class TestAgentState:
    @pytest.mark.asyncio
    async def test_write_then_read(self):
        write = _node("agent-state", {"operation": "write", "stateKey": "mood", "value": "happy"})
        written = await agent_state_runner(write, {"user": "u1"})
        assert written["state"] == {"agent": {"mood": "happy"}}
        assert written["user"] == "u1"

        read = _node("agent-state", {"operation": "read", "stateKey": "mood"})
        assert (await agent_state_runner(read, written))["value"] == "happy"

    @pytest.mark.asyncio
    async def test_append_and_delete(self):
        append = _node("agent-state", {"operation": "append", "stateKey": "seen", "value": "b", "namespace": "ns"})
        output = await agent_state_runner(append, {"state": {"ns": {"seen": ["a"]}}})
        assert output["state"]["ns"]["seen"] == ["a", "b"]

        delete = _node("agent-state", {"operation": "delete", "stateKey": "seen", "namespace": "ns"})
        output = await agent_state_runner(delete, output)
        assert output["state"]["ns"] == {}
        assert output["deleted"] is True

    @pytest.mark.asyncio
    async def test_input_state_not_mutated(self):
        original = {"state": {"agent": {"count": 1}}}
        write = _node("agent-state", {"operation": "write", "stateKey": "count", "value": 2})
        await agent_state_runner(write, original)
        assert original == {"state": {"agent": {"count": 1}}}

    @pytest.mark.asyncio
    async def test_missing_key_and_unknown_operation(self):
        output = await agent_state_runner(_node("agent-state", {"operation": "read"}), {})
        assert output["warning"] == "No stateKey provided"

        node = _node("agent-state", {"operation": "explode", "stateKey": "k"})
        with pytest.raises(ValidationError, match="Unknown state operation"):
            await agent_state_runner(node, {})


class TestHttpRequestRunner:
    @pytest.mark.asyncio
    async def test_post_json_body(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 7})

        runner = HttpRequestRunner(transport=httpx.MockTransport(handler))
        node = _node("http-request", {"url": "https://api.example.com/items", "method": "post", "body": {"name": "x"}})
        output = await runner.execute(node, {})

        assert seen == {"method": "POST", "url": "https://api.example.com/items", "body": {"name": "x"}}
        assert output == {"status": 201, "ok": True, "data": {"id": 7}}

    @pytest.mark.asyncio
    async def test_send_input_as_body(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text="done")

        runner = HttpRequestRunner(transport=httpx.MockTransport(handler))
        node = _node("webhook-call", {"url": "https://hooks.example.com/x", "method": "POST", "sendInput": True})
        output = await runner.execute(node, {"event": "paid"})

        assert seen["body"] == {"event": "paid"}
        assert output["data"] == "done"

    @pytest.mark.asyncio
    async def test_error_status_is_returned_not_raised(self):
        runner = HttpRequestRunner(transport=httpx.MockTransport(lambda request: httpx.Response(404, text="nope")))
        output = await runner.execute(_node("http-request", {"url": "https://api.example.com/x"}), {})
        assert output == {"status": 404, "ok": False, "data": "nope"}

    @pytest.mark.asyncio
    async def test_missing_url(self):
        with pytest.raises(ValidationError, match="requires a url"):
            await HttpRequestRunner().execute(_node("http-request"), {})
