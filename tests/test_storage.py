import json

from grafana_query_mcp.models import Variable
from grafana_query_mcp.storage import InMemoryVariableStorage, JsonFileVariableStorage


def _variables():
    return [
        Variable(id=1, name="region", query="label_values(region)", datasourceId="prom-uid",
                 values=["us-west-2"], selectedValue="us-west-2"),
        Variable(id=2, name="hosts", query='label_values(up{region="${region}"}, host)', multiSelect=True,
                 dependsOn=["region"], values=["a", "b"], selectedValues=["a"]),
    ]


def test_json_storage_round_trips(tmp_path):
    storage = JsonFileVariableStorage(str(tmp_path / "variables.json"))
    storage.save_variables(_variables())
    loaded = storage.load_variables()
    assert [v.name for v in loaded] == ["region", "hosts"]
    assert loaded[1].selectedValues == ["a"]
    assert loaded[1].dependsOn == ["region"]
    assert not (tmp_path / "variables.json.tmp").exists()


def test_json_storage_missing_file(tmp_path):
    assert JsonFileVariableStorage(str(tmp_path / "nope.json")).load_variables() == []


def test_json_storage_skips_invalid_records(tmp_path):
    path = tmp_path / "variables.json"
    path.write_text(json.dumps([{"id": 1, "name": "ok", "query": "up"}, {"name": "missing id"}]), encoding="utf-8")
    loaded = JsonFileVariableStorage(str(path)).load_variables()
    assert [v.name for v in loaded] == ["ok"]


def test_json_storage_clear(tmp_path):
    path = tmp_path / "variables.json"
    storage = JsonFileVariableStorage(str(path))
    storage.save_variables(_variables())
    storage.clear_variables()
    assert not path.exists()
    storage.clear_variables()


def test_in_memory_storage_is_a_copy():
    storage = InMemoryVariableStorage(_variables())
    loaded = storage.load_variables()
    loaded[0].selectedValue = "changed"
    assert storage.load_variables()[0].selectedValue == "us-west-2"
    storage.save_variables(loaded)
    assert storage.save_count == 1
    storage.clear_variables()
    assert storage.load_variables() == []
