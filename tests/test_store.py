import json

import pytest

from stepflow.config import Settings
from stepflow.engine.errors import DefinitionStoreError, WorkflowNotFoundError
from stepflow.store import InMemoryDefinitionStore, JsonFileDefinitionStore, create_store

from helpers import definition, edge, tool


def sample(workflow_id="wf", name="Test workflow"):
    return definition([tool("a"), tool("b")], [edge("a", "b", "x", "y")], id=workflow_id, name=name)


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryDefinitionStore()
    return JsonFileDefinitionStore(str(tmp_path / "workflows"))


class TestDefinitionStore:
    def test_save_and_load(self, store):
        saved = store.save(sample())
        loaded = store.load("wf")

        assert saved.version == 1
        assert saved.last_modified is not None
        assert loaded == saved
        assert loaded.edges[0].target_field_path == "y"

    def test_resave_bumps_version(self, store):
        store.save(sample())
        again = store.save(sample(name="Renamed"))
        assert again.version == 2
        assert store.load("wf").name == "Renamed"

    def test_missing_workflow(self, store):
        with pytest.raises(WorkflowNotFoundError) as exc:
            store.load("nope")
        assert exc.value.code == "workflow_not_found"

    def test_list_summaries(self, store):
        store.save(sample("beta"))
        store.save(sample("alpha"))
        summaries = store.list()
        assert [s["id"] for s in summaries] == ["alpha", "beta"]
        assert summaries[0]["step_count"] == 2
        assert summaries[0]["toolkits"] == ["demo"]

    def test_delete(self, store):
        store.save(sample())
        store.delete("wf")
        with pytest.raises(WorkflowNotFoundError):
            store.load("wf")
        with pytest.raises(WorkflowNotFoundError):
            store.delete("wf")


class TestJsonFileStore:
    def test_layout(self, tmp_path):
        store = JsonFileDefinitionStore(str(tmp_path))
        store.save(sample())
        path = store.save_generated("wf", "# code\n")

        assert (tmp_path / "wf" / "workflow.json").exists()
        assert path == str(tmp_path / "wf" / "workflow.py")
        assert (tmp_path / "wf" / "workflow.py").read_text() == "# code\n"
        assert json.loads((tmp_path / "wf" / "workflow.json").read_text())["id"] == "wf"

    def test_unsafe_ids_are_rejected(self, tmp_path):
        store = JsonFileDefinitionStore(str(tmp_path))
        with pytest.raises(DefinitionStoreError):
            store.load("../etc")
        with pytest.raises(DefinitionStoreError):
            store.save(sample("a/b"))

    def test_corrupt_file(self, tmp_path):
        store = JsonFileDefinitionStore(str(tmp_path))
        store.save(sample("good"))
        (tmp_path / "bad").mkdir()
        (tmp_path / "bad" / "workflow.json").write_text("{not json")

        with pytest.raises(DefinitionStoreError):
            store.load("bad")
        assert [s["id"] for s in store.list()] == ["good"]

    def test_delete_removes_generated_code(self, tmp_path):
        store = JsonFileDefinitionStore(str(tmp_path))
        store.save(sample())
        store.save_generated("wf", "# code\n")
        store.delete("wf")
        assert not (tmp_path / "wf").exists()

    def test_list_of_missing_root(self, tmp_path):
        assert JsonFileDefinitionStore(str(tmp_path / "nothing")).list() == []


class TestCreateStore:
    def test_backends(self, tmp_path):
        assert isinstance(create_store(Settings(store_backend="memory")), InMemoryDefinitionStore)
        file_store = create_store(Settings(store_backend="file", store_path=str(tmp_path)))
        assert isinstance(file_store, JsonFileDefinitionStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store(Settings(store_backend="redis"))
