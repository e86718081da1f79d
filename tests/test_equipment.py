import pytest

from conftest import auth, make_equipment
from equiptrack.models.models import Equipment
from equiptrack.services import inventory
from equiptrack.services.mailer import MailerError, MailerNotConfigured, render_inventory_html


@pytest.mark.parametrize("total,parts,expected", [
    (10, 3, [4, 3, 3]),
    (9, 3, [3, 3, 3]),
    (2, 3, [2, 0, 0]),
    (0, 2, [0, 0]),
    (7, 1, [7]),
])
def test_redistribute_puts_remainder_on_first_row(total, parts, expected):
    assert inventory.redistribute(total, parts) == expected
    assert sum(expected) == total


def test_redistribute_rejects_empty_group():
    with pytest.raises(inventory.InvalidRequest):
        inventory.redistribute(5, 0)


def test_list_groups_rows_by_name_site_and_rental(client, db, admin, north, south):
    a = make_equipment(db, north, "Scaffold Frame", 4)
    b = make_equipment(db, north, "Scaffold Frame", 6)
    make_equipment(db, north, "Scaffold Frame", 1, is_rental=True)
    make_equipment(db, south, "Scaffold Frame", 2)
    make_equipment(db, None, "Scaffold Frame", 3)

    groups = client.get("/equipment", headers=auth(admin)).json()
    by_key = {(g["site_name"], g["is_rental"]): g for g in groups}
    assert len(groups) == 4
    assert by_key[("North Yard", False)]["total_quantity"] == 10
    assert by_key[("North Yard", False)]["ids"] == [a.id, b.id]
    assert by_key[("North Yard", True)]["total_quantity"] == 1
    assert by_key[("South Tower", False)]["total_quantity"] == 2
    assert by_key[("Not Assigned", False)]["site_id"] is None

    only_south = client.get("/equipment", params={"site_id": str(south.id)}, headers=auth(admin)).json()
    assert [(g["site_name"], g["total_quantity"]) for g in only_south] == [("South Tower", 2)]


def test_bulk_edit_redistributes_and_moves(client, db, admin, north, south):
    rows = [make_equipment(db, north, "Scaffold Frame", q) for q in (4, 6, 1)]
    ids = [r.id for r in rows]
    r = client.put(
        "/equipment/groups",
        json={"groups": [{"ids": ids, "quantity": 10, "site_id": str(south.id)}]},
        headers=auth(admin),
    )
    assert r.status_code == 200, r.text
    db.expire_all()
    stored = {row.id: row for row in db.query(Equipment).filter(Equipment.id.in_(ids))}
    assert [stored[i].quantity for i in ids] == [4, 3, 3]
    assert {stored[i].site_id for i in ids} == {south.id}


def test_bulk_edit_is_all_or_nothing(client, db, admin, north):
    row = make_equipment(db, north, "Ladder", 4)
    r = client.put(
        "/equipment/groups",
        json={"groups": [
            {"ids": [row.id], "quantity": 9, "site_id": str(north.id)},
            {"ids": [999999], "quantity": 1, "site_id": str(north.id)},
        ]},
        headers=auth(admin),
    )
    assert r.status_code == 404
    db.expire_all()
    assert db.get(Equipment, row.id).quantity == 4


def test_bulk_edit_rejects_row_in_two_groups(client, db, admin, north):
    row = make_equipment(db, north, "Ladder", 4)
    r = client.put(
        "/equipment/groups",
        json={"groups": [{"ids": [row.id], "quantity": 1}, {"ids": [row.id], "quantity": 2}]},
        headers=auth(admin),
    )
    assert r.status_code == 400


def test_delete_group(client, db, admin, north):
    rows = [make_equipment(db, north, "Ladder", 2) for _ in range(3)]
    keep = make_equipment(db, north, "Drill", 1)
    r = client.request("DELETE", "/equipment/groups", json={"ids": [x.id for x in rows]}, headers=auth(admin))
    assert r.json() == {"deleted": 3}
    db.expire_all()
    assert [e.id for e in db.query(Equipment).all()] == [keep.id]


def test_create_and_patch_equipment(client, db, admin, north):
    r = client.post(
        "/equipment",
        json={"name": "  Compactor ", "site_id": str(north.id), "quantity": 2, "is_rental": False},
        headers=auth(admin),
    )
    assert r.status_code == 201
    created = r.json()
    assert created["name"] == "Compactor"
    assert created["status"] == "available"
    r = client.patch(f"/equipment/{created['id']}", json={"status": "in use", "quantity": 5}, headers=auth(admin))
    assert (r.json()["status"], r.json()["quantity"]) == ("in use", 5)
    r = client.patch(f"/equipment/{created['id']}", json={"quantity": -1}, headers=auth(admin))
    assert r.status_code == 422
    assert client.patch("/equipment/424242", json={"quantity": 1}, headers=auth(admin)).status_code == 404


def test_mine_splits_owned_and_rental(client, db, sup_north, north, south):
    make_equipment(db, north, "Ladder", 2)
    make_equipment(db, north, "Ladder", 3)
    make_equipment(db, north, "Excavator", 1, is_rental=True)
    make_equipment(db, south, "Ladder", 7)
    body = client.get("/equipment/mine", headers=auth(sup_north)).json()
    assert body["site_name"] == "North Yard"
    assert body["owned"] == [{"name": "Ladder", "count": 5}]
    assert body["rental"] == [{"name": "Excavator", "count": 1}]


def test_options_scoped_to_site(client, db, admin, sup_north, north, south):
    mine = make_equipment(db, north, "Ladder", 2)
    make_equipment(db, north, "Empty", 0)
    make_equipment(db, south, "Drill", 1)
    assert [e["id"] for e in client.get("/equipment/options", headers=auth(sup_north)).json()] == [mine.id]
    assert client.get("/equipment/options", headers=auth(admin)).status_code == 400
    names = [e["name"] for e in client.get("/equipment/options", params={"site_id": str(south.id)}, headers=auth(admin)).json()]
    assert names == ["Drill"]


def test_export_emails_html_table(client, db, sup_north, north, monkeypatch):
    make_equipment(db, north, "Ladder <steel>", 2)
    sent = {}

    def fake_send(to, subject, body_html):
        sent.update(to=to, subject=subject, html=body_html)
        return "api"

    monkeypatch.setattr("equiptrack.routes.equipment.send_html_email", fake_send)
    r = client.post("/equipment/export", json={"recipient": "office@example.com"}, headers=auth(sup_north))
    assert r.status_code == 200
    assert r.json()["lines"] == 1
    assert sent["to"] == "office@example.com"
    assert sent["subject"] == "Equipment at North Yard"
    assert "Ladder &lt;steel&gt;" in sent["html"]


def test_export_other_site_forbidden_for_supervisor(client, sup_north, south):
    r = client.post("/equipment/export", json={"recipient": "office@example.com", "site_id": str(south.id)}, headers=auth(sup_north))
    assert r.status_code == 403


@pytest.mark.parametrize("error,status", [(MailerNotConfigured("none"), 503), (MailerError("down"), 502)])
def test_export_mail_failures(client, admin, monkeypatch, error, status):
    def failing(*args, **kwargs):
        raise error

    monkeypatch.setattr("equiptrack.routes.equipment.send_html_email", failing)
    r = client.post("/equipment/export", json={"recipient": "office@example.com"}, headers=auth(admin))
    assert r.status_code == status


def test_render_inventory_html_handles_empty():
    html = render_inventory_html("Equipment across all sites", [])
    assert "No equipment" in html
    assert "<h2>Equipment across all sites</h2>" in html


def test_export_refuses_multiline_subject(client, admin, monkeypatch):
    monkeypatch.setattr("equiptrack.routes.equipment.send_html_email", lambda *a: "api")
    r = client.post(
        "/equipment/export",
        json={"recipient": "office@example.com", "subject": "Inventory\nBcc: someone@example.com"},
        headers=auth(admin),
    )
    assert r.status_code == 422
