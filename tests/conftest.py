import pytest

from stepflow.connectors import InMemoryTableStore, ToolCatalog
from stepflow.engine import WorkflowEngine
from stepflow.engine.models import RuntimeContext
from stepflow.samples import SAMPLE_ACTIONS
from stepflow.store import InMemoryDefinitionStore

from helpers import FakeActionClient, build_registry

PAGE = "First paragraph.\n\nSecond paragraph.\n\nThird paragraph.\n\nFourth paragraph."


@pytest.fixture
def action_client():
    """Fake action service answering the sample scrape and email actions"""
    return FakeActionClient({
        "FIRECRAWL_SCRAPE": {"markdown": PAGE, "metadata": {"title": "Example page"}},
        "GMAIL_SEND_EMAIL": {"id": "msg_1", "threadId": "thread_1"},
    })


@pytest.fixture
def table_store():
    return InMemoryTableStore({
        "tbl_contacts": [
            {"id": "c1", "name": "Ada", "age": 36, "tags": ["vip"]},
            {"id": "c2", "name": "Grace", "age": 45, "tags": []},
            {"id": "c3", "name": "Linus", "age": 28, "tags": ["vip", "beta"]},
        ]
    })


@pytest.fixture
def registry(action_client, table_store):
    return build_registry(action_client, table_store=table_store, catalog=ToolCatalog(SAMPLE_ACTIONS))


@pytest.fixture
def context():
    return RuntimeContext(
        resource_id="user_1",
        connection_bindings={"firecrawl": "conn_fc", "gmail": "conn_gm", "demo": "conn_demo"},
        table_bindings={"contacts": "tbl_contacts"},
    )


@pytest.fixture
def engine(registry):
    return WorkflowEngine(InMemoryDefinitionStore(), registry)
