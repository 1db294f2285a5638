import pytest
from fastapi.testclient import TestClient

from tablebridge import main as api
from tablebridge.execution.orchestrator import ConversionOrchestrator


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(api, "orchestrator", ConversionOrchestrator())
    with TestClient(api.app) as client:
        yield client


def test_list_tables(client, write_file, tables_txt):
    path = write_file("Tables.txt", tables_txt)

    response = client.get("/tables", params={"path": path})

    assert response.status_code == 200
    assert [t["name"] for t in response.json()["tables"]] == ["Items", "Drops", "Shops"]


def test_get_single_table(client, write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)

    response = client.get("/table", params={"path": path})

    assert response.status_code == 200
    assert response.json()["rows"][0] == [1, "Sword", -5, 0.5, "sharp"]


@pytest.mark.parametrize(
    "name, table, status",
    [
        ("table.xyz", None, 400),
        ("missing.shn", None, 404),
        ("Tables.txt", "Monsters", 404),
        ("Tables.txt", None, 404),
    ],
)
def test_error_status_codes(client, write_file, tables_txt, tmp_path, name, table, status):
    write_file("Tables.txt", tables_txt)
    params = {"path": str(tmp_path / name)}
    if table:
        params["table"] = table

    response = client.get("/table", params=params)

    assert response.status_code == status
    assert response.json()["detail"]["status"] == "ERROR"


def test_put_then_save(client, write_file, tables_txt):
    path = write_file("Tables.txt", tables_txt)
    document = client.get("/table", params={"path": path, "table": "Drops"}).json()
    document["rows"][0][0] = 300

    response = client.put("/table", json={"path": path, "document": document})
    assert response.status_code == 200
    assert response.json()["dirty"] == [f"{path}#Drops"]

    response = client.post("/save", json={})
    assert response.status_code == 200
    assert response.json()["written"] == [path]

    with open(path, "rb") as f:
        assert f.read() == tables_txt.replace(b"#record\t100\t", b"#record\t300\t")


def test_invalid_document_is_rejected_on_save(client, write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)
    document = client.get("/table", params={"path": path}).json()
    document["rows"][0][1] = "x" * 40

    assert client.put("/table", json={"path": path, "document": document}).status_code == 200

    response = client.post("/save", json={"path": path})
    assert response.status_code == 422

    with open(path, "rb") as f:
        assert f.read() == items_shn


def test_put_requires_path_and_document(client):
    assert client.put("/table", json={"path": "a.shn"}).status_code == 400
