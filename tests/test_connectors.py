import json

import httpx
import pytest

from stepflow.connectors import (
    ActionSpec, ConnectorRegistry, ControlFlowConnector, CustomCodeConnector, HttpActionClient,
    InMemoryTableStore, RemoteToolConnector, TableQueryConnector, TableWriteConnector, ToolCatalog,
)
from stepflow.connectors.control_flow import evaluate_condition
from stepflow.engine.errors import (
    CustomCodeError, ConnectorError, MissingConnectionError, RemoteActionError, TableError, UnknownConnectorError,
)
from stepflow.engine.models import RuntimeContext, StepNode, StepType

from helpers import FakeActionClient, code, definition, tool


def control(kind, **config):
    return StepNode(id="cf", type=StepType.CONTROL_FLOW, config={"kind": kind, **config})


def table_node(step_type, **config):
    return StepNode(id="t", type=step_type, table_ref="contacts", config=config)


class TestRemoteTool:
    @pytest.mark.asyncio
    async def test_calls_action_with_bound_account(self, context):
        client = FakeActionClient({"SEARCH": {"hits": 3}})
        connector = RemoteToolConnector(client)

        output = await connector.execute(tool("s", action="SEARCH"), {"q": "x"}, context)

        assert output == {"hits": 3}
        assert client.calls == [{
            "action_id": "SEARCH",
            "arguments": {"q": "x"},
            "connected_account_id": "conn_demo",
            "entity_id": "user_1",
        }]

    @pytest.mark.asyncio
    async def test_missing_binding_makes_no_call(self):
        client = FakeActionClient()
        with pytest.raises(MissingConnectionError) as exc:
            await RemoteToolConnector(client).execute(tool("s"), {}, RuntimeContext())
        assert exc.value.details == {"toolkit_slug": "demo"}
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_non_object_input_is_wrapped(self, context):
        client = FakeActionClient()
        await RemoteToolConnector(client).execute(tool("s"), "hello", context)
        assert client.calls[0]["arguments"] == {"input": "hello"}


class TestHttpActionClient:
    @pytest.mark.asyncio
    async def test_posts_composio_style_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("x-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"successful": True, "data": {"ok": 1}})

        client = HttpActionClient("https://actions.test/api/", api_key="k", transport=httpx.MockTransport(handler))
        result = await client.execute_action("GMAIL_SEND_EMAIL", {"to": "a"}, "conn_1", entity_id="user_1")

        assert result.successful
        assert result.data == {"ok": 1}
        assert seen["url"] == "https://actions.test/api/tools/execute/GMAIL_SEND_EMAIL"
        assert seen["key"] == "k"
        assert seen["body"] == {"arguments": {"to": "a"}, "connected_account_id": "conn_1", "user_id": "user_1"}

    @pytest.mark.asyncio
    async def test_http_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="upstream down"))
        client = HttpActionClient("https://actions.test", transport=transport)
        with pytest.raises(RemoteActionError) as exc:
            await client.execute_action("X", {}, "conn_1")
        assert exc.value.details["status_code"] == 500
        assert "upstream down" in exc.value.message

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        client = HttpActionClient("https://actions.test", transport=transport)
        with pytest.raises(RemoteActionError):
            await client.execute_action("X", {}, "conn_1")

    @pytest.mark.asyncio
    async def test_unsuccessful_payload(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"successful": False, "error": "bad token"})
        )
        result = await HttpActionClient("https://actions.test", transport=transport).execute_action("X", {}, "c")
        assert not result.successful
        assert result.error == "bad token"


class TestCustomCode:
    @pytest.mark.asyncio
    async def test_runs_inline_code(self, context):
        node = code("c", source="def run(input):\n    return {'double': input['n'] * 2}\n")
        assert await CustomCodeConnector().execute(node, {"n": 4}, context) == {"double": 8}

    @pytest.mark.asyncio
    async def test_runs_async_inline_code(self, context):
        node = code("c", source="async def run(input):\n    return input['n'] + 1\n")
        assert await CustomCodeConnector().execute(node, {"n": 4}, context) == 5

    @pytest.mark.asyncio
    async def test_registered_function(self, context):
        connector = CustomCodeConnector()
        connector.register("slugify", lambda input: input["title"].lower().replace(" ", "-"))
        assert connector.list_functions() == ["slugify"]
        assert await connector.execute(code("c", function="slugify"), {"title": "Hello World"}, context) == "hello-world"

    @pytest.mark.asyncio
    async def test_error_carries_stack(self, context):
        node = code("c", source="def run(input):\n    return 1 / 0\n")
        with pytest.raises(CustomCodeError) as exc:
            await CustomCodeConnector().execute(node, {}, context)
        assert exc.value.message.startswith("ZeroDivisionError")
        assert "ZeroDivisionError" in exc.value.stack

    @pytest.mark.asyncio
    async def test_code_without_run(self, context):
        with pytest.raises(CustomCodeError):
            await CustomCodeConnector().execute(code("c", source="x = 1"), {}, context)

    @pytest.mark.asyncio
    async def test_syntax_error(self, context):
        with pytest.raises(CustomCodeError) as exc:
            await CustomCodeConnector().execute(code("c", source="def run(:"), {}, context)
        assert "failed to load" in exc.value.message

    @pytest.mark.asyncio
    async def test_nothing_to_run(self, context):
        with pytest.raises(CustomCodeError):
            await CustomCodeConnector().execute(code("c", function="unknown"), {}, context)


class TestTables:
    @pytest.mark.asyncio
    async def test_query_with_filter_sort_and_limit(self, table_store, context):
        node = table_node(
            StepType.TABLE_QUERY,
            filter={"column": "age", "operator": "gt", "value": 30},
            sort={"column": "age", "descending": True},
            limit=5,
        )
        output = await TableQueryConnector(table_store).execute(node, {}, context)
        assert [r["name"] for r in output["rows"]] == ["Grace", "Ada"]
        assert output["count"] == 2

    @pytest.mark.asyncio
    async def test_scalar_inputs_filter_by_equality(self, table_store, context):
        node = table_node(StepType.TABLE_QUERY, filter={"column": "tags", "operator": "contains", "value": "vip"})
        output = await TableQueryConnector(table_store).execute(node, {"name": "Linus"}, context)
        assert [r["id"] for r in output["rows"]] == ["c3"]

    @pytest.mark.asyncio
    async def test_unbound_table(self, table_store):
        with pytest.raises(TableError):
            await TableQueryConnector(table_store).execute(table_node(StepType.TABLE_QUERY), {}, RuntimeContext())

    @pytest.mark.asyncio
    async def test_bound_table_missing_from_store(self):
        context = RuntimeContext(table_bindings={"contacts": "tbl_gone"})
        with pytest.raises(TableError) as exc:
            await TableQueryConnector(InMemoryTableStore()).execute(table_node(StepType.TABLE_QUERY), {}, context)
        assert exc.value.details == {"table_id": "tbl_gone"}

    @pytest.mark.asyncio
    async def test_insert(self, table_store, context):
        output = await TableWriteConnector(table_store).execute(
            table_node(StepType.TABLE_WRITE), {"name": "Barbara", "age": 50}, context
        )
        assert output["inserted"] is True
        assert output["id"] == "row_1"
        assert len(table_store.tables["tbl_contacts"]) == 4

    @pytest.mark.asyncio
    async def test_upsert_updates_matching_row(self, table_store, context):
        node = table_node(StepType.TABLE_WRITE, mode="upsert", upsert_key="name")
        output = await TableWriteConnector(table_store).execute(node, {"name": "Ada", "age": 37}, context)

        assert output["inserted"] is False
        assert output["id"] == "c1"
        assert output["row"]["age"] == 37
        assert len(table_store.tables["tbl_contacts"]) == 3

    @pytest.mark.asyncio
    async def test_upsert_inserts_unmatched_row(self, table_store, context):
        node = table_node(StepType.TABLE_WRITE, mode="upsert", upsert_key="name")
        output = await TableWriteConnector(table_store).execute(node, {"name": "Barbara", "age": 50}, context)

        assert output["inserted"] is True
        assert output["row"]["name"] == "Barbara"
        assert len(table_store.tables["tbl_contacts"]) == 4

    @pytest.mark.asyncio
    async def test_upsert_needs_key_in_input(self, table_store, context):
        node = table_node(StepType.TABLE_WRITE, mode="upsert", upsert_key="email")
        with pytest.raises(TableError):
            await TableWriteConnector(table_store).execute(node, {"name": "Ada"}, context)

    @pytest.mark.asyncio
    async def test_invalid_config(self, table_store, context):
        node = table_node(StepType.TABLE_WRITE, mode="replace")
        with pytest.raises(TableError):
            await TableWriteConnector(table_store).execute(node, {"name": "Ada"}, context)


class TestControlFlow:
    @pytest.mark.asyncio
    async def test_branch_first_match_wins(self, context):
        node = control("branch", branches=[
            {"condition": "score >= 7", "route": "publish"},
            {"condition": "score >= 3", "route": "review"},
        ], default_route="discard")
        connector = ControlFlowConnector()

        assert (await connector.execute(node, {"score": 9}, context))["route"] == "publish"
        assert (await connector.execute(node, {"score": 4}, context))["route"] == "review"
        assert await connector.execute(node, {"score": 1}, context) == {"route": "discard", "value": {"score": 1}}

    def test_invalid_condition_is_false(self):
        assert evaluate_condition("score >", {"score": 1}) is False
        assert evaluate_condition("__import__('os')", {}) is False
        assert evaluate_condition("len(items) == 2", {"items": [1, 2]}) is True

    @pytest.mark.asyncio
    async def test_merge(self, context):
        connector = ControlFlowConnector()
        merged = await connector.execute(control("merge"), {"a": {"x": 1}, "b": {"y": 2}, "c": 3}, context)
        assert merged == {"x": 1, "y": 2, "c": 3}

        first = await connector.execute(control("merge", merge_strategy="first"), {"a": None, "b": 2}, context)
        assert first == {"value": 2}

    @pytest.mark.asyncio
    async def test_loop(self, context):
        node = control("loop", iterable_field="rows", item_path="email", condition="item.get('active')")
        rows = [
            {"email": "a@x.io", "active": True},
            {"email": "b@x.io", "active": False},
            {"active": True},
        ]
        assert await ControlFlowConnector().execute(node, {"rows": rows}, context) == {
            "items": ["a@x.io"],
            "count": 1,
        }

    @pytest.mark.asyncio
    async def test_passthrough(self, context):
        assert await ControlFlowConnector().execute(control("passthrough"), {"a": 1}, context) == {"a": 1}

    @pytest.mark.asyncio
    async def test_invalid_kind(self, context):
        with pytest.raises(ConnectorError):
            await ControlFlowConnector().execute(control("switch"), {}, context)


class TestRegistry:
    def test_resolves_by_step_type(self):
        registry = ConnectorRegistry.create_default(FakeActionClient())
        assert isinstance(registry.resolve(StepType.TABLE_QUERY), TableQueryConnector)
        assert registry.list_connectors()["custom_code"] == "CustomCodeConnector"

    def test_toolkit_override(self):
        registry = ConnectorRegistry.create_default(FakeActionClient())
        special = RemoteToolConnector(FakeActionClient())
        registry.register(special, toolkit_slug="slack")

        assert registry.resolve(StepType.REMOTE_TOOL, "slack") is special
        assert registry.resolve(StepType.REMOTE_TOOL, "gmail") is not special
        assert "toolkit:slack" in registry.list_connectors()

    def test_unknown_connector(self):
        with pytest.raises(UnknownConnectorError):
            ConnectorRegistry().resolve(StepType.CONTROL_FLOW)

    def test_catalog_hydrates_empty_schemas(self):
        catalog = ToolCatalog([ActionSpec(
            toolkit_slug="demo", action_id="A", input_schema={"type": "object"}, output_schema={"type": "string"},
        )])
        original = definition([tool("a"), tool("b", output_schema={"type": "object"})])

        hydrated = catalog.hydrate(original)

        assert hydrated.nodes[0].input_schema == {"type": "object"}
        assert hydrated.nodes[0].output_schema == {"type": "string"}
        assert original.nodes[0].output_schema == {}
        assert len(catalog.list_actions("demo")) == 1

    def test_catalog_from_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps([{"toolkit_slug": "slack", "action_id": "SLACK_POST"}]))
        catalog = ToolCatalog.from_file(str(path))
        assert len(catalog) == 1
        assert catalog.get("slack", "SLACK_POST").action_id == "SLACK_POST"
