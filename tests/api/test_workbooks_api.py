"""HTTP tests for the workbook editing routes."""

import sys
from pathlib import Path

# Add project root to path (tests/api/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest
from fastapi.testclient import TestClient

from main import app


@pytest.fixture
def client():
    return TestClient(app)


def _blank(client) -> str:
    response = client.post("/workbooks/blank")
    assert response.status_code == 200
    return response.json()["workbookId"]


def _edit(client, workbook_id, edits, sheet=None):
    body = {"edits": [{"cell": ref, "value": value} for ref, value in edits]}
    if sheet is not None:
        body["sheet"] = sheet
    return client.post(f"/workbooks/{workbook_id}/cells", json=body)


class TestWorkbookLifecycle:
    """Create, inspect and close editing sessions."""

    def test_health(self, client):
        assert client.get("/").json() == {"status": "ok"}

    def test_blank_workbook(self, client):
        response = client.post("/workbooks/blank")
        data = response.json()
        assert data["activeIndex"] == 0
        assert [s["name"] for s in data["sheets"]] == ["Sheet1"]

    def test_unknown_workbook(self, client):
        assert client.get("/workbooks/nope").status_code == 404
        assert client.get("/workbooks/nope/sheets/0").status_code == 404

    def test_close(self, client):
        workbook_id = _blank(client)
        assert client.delete(f"/workbooks/{workbook_id}").status_code == 200
        assert client.get(f"/workbooks/{workbook_id}").status_code == 404

    def test_cell_edits(self, client):
        workbook_id = _blank(client)
        response = _edit(client, workbook_id, [("A1", "Item"), ("B1", 4), ("A2", "www.example.com")])
        assert response.status_code == 200

        sheet = client.get(f"/workbooks/{workbook_id}/sheets/0").json()
        assert sheet["grid"][0][:2] == ["Item", 4]
        assert sheet["meta"].get("cells", {}).get("1-0") is None

    def test_bad_cell_reference(self, client):
        workbook_id = _blank(client)
        assert _edit(client, workbook_id, [("not a ref", 1)]).status_code == 400

    def test_insert_rows(self, client):
        workbook_id = _blank(client)
        _edit(client, workbook_id, [("A1", "top")])
        response = client.post(f"/workbooks/{workbook_id}/sheets/0/rows", json={"after": -1, "count": 2})
        assert response.status_code == 200
        sheet = client.get(f"/workbooks/{workbook_id}/sheets/0").json()
        assert sheet["grid"][2][0] == "top"


class TestSheets:
    def test_add_rename_activate_delete(self, client):
        workbook_id = _blank(client)
        client.post(f"/workbooks/{workbook_id}/sheets", json={"name": "Budget"})
        client.patch(f"/workbooks/{workbook_id}/sheets/1", json={"name": "Plan"})
        data = client.post(f"/workbooks/{workbook_id}/sheets/1/activate").json()
        assert data["activeIndex"] == 1
        assert data["sheets"][1]["name"] == "Plan"

        data = client.delete(f"/workbooks/{workbook_id}/sheets/1").json()
        assert data["activeIndex"] == 0
        assert len(data["sheets"]) == 1

    def test_cannot_delete_last_sheet(self, client):
        workbook_id = _blank(client)
        assert client.delete(f"/workbooks/{workbook_id}/sheets/0").status_code == 400

    def test_duplicate(self, client):
        workbook_id = _blank(client)
        data = client.post(f"/workbooks/{workbook_id}/sheets/0/duplicate").json()
        assert [s["name"] for s in data["sheets"]] == ["Sheet1", "Sheet1 (copy)"]

    def test_missing_sheet(self, client):
        workbook_id = _blank(client)
        assert client.patch(f"/workbooks/{workbook_id}/sheets/7", json={"name": "x"}).status_code == 404


class TestUpload:
    """Upload decoding and error mapping."""

    def test_csv_upload(self, client):
        files = {"file": ("data.csv", b"Name,Qty\nWidget,3\n", "text/csv")}
        response = client.post("/workbooks/", files=files)
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "data.csv"
        assert data["sheets"][0]["name"] == "data"
        assert data["sheets"][0]["rows"] == 2

    def test_json_error_body(self, client):
        files = {"file": ("report.xlsx", b'{"error": "Access denied"}', "application/json")}
        response = client.post("/workbooks/", files=files)
        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["kind"] == "json"
        assert detail["serverMessage"] == "Access denied"

    def test_binary_garbage(self, client):
        files = {"file": ("blob.bin", b"\x00\x01\x02\x03", "application/octet-stream")}
        assert client.post("/workbooks/", files=files).status_code == 415

    def test_xlsx_export_reopens(self, client):
        workbook_id = _blank(client)
        _edit(client, workbook_id, [("A1", "kept")])
        exported = client.get(f"/workbooks/{workbook_id}/export/xlsx")
        assert exported.status_code == 200
        assert exported.content[:2] == b"PK"
        assert "attachment" in exported.headers["content-disposition"]

        files = {"file": ("again.xlsx", exported.content, "application/octet-stream")}
        reopened = client.post("/workbooks/", files=files).json()
        sheet = client.get(f"/workbooks/{reopened['workbookId']}/sheets/0").json()
        assert sheet["grid"][0][0] == "kept"

    def test_csv_export(self, client):
        workbook_id = _blank(client)
        _edit(client, workbook_id, [("A1", "a"), ("B1", "b,c")])
        exported = client.get(f"/workbooks/{workbook_id}/export/csv")
        assert exported.status_code == 200
        assert exported.headers["content-type"].startswith("text/csv")
        assert exported.content.splitlines()[0].startswith(b'a,"b,c"')

    def test_unknown_export_format(self, client):
        workbook_id = _blank(client)
        assert client.get(f"/workbooks/{workbook_id}/export/pdf").status_code == 422


class TestRulesAndOverlays:
    def test_rule_overlays(self, client):
        workbook_id = _blank(client)
        _edit(client, workbook_id, [("B2", 3), ("B3", 10)])
        rule = {
            "range": {"startRow": 1, "startCol": 1, "endRow": 2, "endCol": 1},
            "condition": {"kind": "numeric", "operator": "gt", "value": 5},
            "format": {"className": "hot", "styles": {"color": "#FF0000"}},
        }
        created = client.post(f"/workbooks/{workbook_id}/sheets/0/rules", json=rule)
        assert created.status_code == 200
        rule_id = created.json()["id"]

        overlays = client.get(f"/workbooks/{workbook_id}/sheets/0/overlays").json()
        assert "hot" in overlays["classes"]["2-1"]
        assert overlays["styles"]["2-1"]["color"] == "#FF0000"
        assert "1-1" not in overlays["styles"]

        assert client.delete(f"/workbooks/{workbook_id}/sheets/0/rules/{rule_id}").status_code == 200
        assert client.delete(f"/workbooks/{workbook_id}/sheets/0/rules/{rule_id}").status_code == 404

    def test_invalid_rule(self, client):
        workbook_id = _blank(client)
        rule = {
            "range": {"startRow": 0, "startCol": 0, "endRow": 0, "endCol": 0},
            "condition": {"kind": "sparkle"},
        }
        assert client.post(f"/workbooks/{workbook_id}/sheets/0/rules", json=rule).status_code == 400

    def test_panel_rule(self, client):
        workbook_id = _blank(client)
        _edit(client, workbook_id, [("B2", 3), ("B3", 10)])
        panel = {"mode": "numeric", "operator": "gt", "a1_range": "B2:B3", "value": "5", "fill_color": "#FFFF00"}
        created = client.post(f"/workbooks/{workbook_id}/sheets/0/rules/panel", json=panel)
        assert created.status_code == 200
        data = created.json()
        assert data["range"]["startRow"] == 1
        assert data["condition"]["kind"] == "numeric"
        assert data["format"]["styles"]["backgroundColor"] == "#FFFF00"

    def test_panel_rule_with_negative_selection(self, client):
        workbook_id = _blank(client)
        _edit(client, workbook_id, [("A1", 1), ("B2", 7)])
        panel = {"mode": "numeric", "operator": "gt", "value": "5", "selection": [-1, 0, 0, 0]}
        created = client.post(f"/workbooks/{workbook_id}/sheets/0/rules/panel", json=panel)
        assert created.status_code == 200
        assert created.json()["range"]["startRow"] == 0
        assert created.json()["range"]["startCol"] == 0


class TestCharts:
    def test_chart_data(self, client):
        workbook_id = _blank(client)
        _edit(client, workbook_id, [("A1", "Month"), ("B1", "Sales"), ("A2", "Jan"), ("B2", 10), ("A3", "Feb"), ("B3", 12)])
        chart = {"type": "line", "dataRange": {"startRow": 0, "startCol": 0, "endRow": 2, "endCol": 1}}
        created = client.post(f"/workbooks/{workbook_id}/sheets/0/charts", json=chart)
        assert created.status_code == 200
        chart_id = created.json()["id"]

        data = client.get(f"/workbooks/{workbook_id}/sheets/0/charts/{chart_id}/data").json()
        assert data["categories"] == ["Jan", "Feb"]
        assert data["series"][0]["name"] == "Sales"
        assert data["series"][0]["data"] == [10.0, 12.0]

        assert client.delete(f"/workbooks/{workbook_id}/sheets/0/charts/{chart_id}").status_code == 200
        assert client.get(f"/workbooks/{workbook_id}/sheets/0/charts/{chart_id}/data").status_code == 404

    def test_invalid_chart(self, client):
        workbook_id = _blank(client)
        chart = {"type": "radar", "dataRange": {"startRow": 0, "startCol": 0, "endRow": 1, "endCol": 1}}
        assert client.post(f"/workbooks/{workbook_id}/sheets/0/charts", json=chart).status_code == 400
