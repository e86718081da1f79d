import pytest

from conftest import auth, make_equipment, make_site, make_user
from equiptrack.models.models import Equipment, EquipmentTransfer
from equiptrack.services.inventory import total_units


def _transfer(client, user, **body):
    r = client.post("/transfers", json=body, headers=auth(user))
    assert r.status_code == 201, r.text
    return r.json()


def _site_rows(db, site):
    db.expire_all()
    return {(r.name, r.is_rental): r.quantity for r in db.query(Equipment).filter(Equipment.site_id == site.id)}


@pytest.fixture()
def stocked(db, north, south):
    return {
        "mixer": make_equipment(db, north, "Concrete Mixer", 5),
        "lift": make_equipment(db, north, "Boom Lift", 2, is_rental=True),
        "south_mixer": make_equipment(db, south, "Concrete Mixer", 1),
    }


def test_create_transfer_records_snapshot(client, sup_north, north, south, stocked):
    t = _transfer(
        client, sup_north,
        equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=2,
        comment="for slab pour", vehicle_number="TRK-42", remarks="handle with care",
    )
    assert t["status"] == "pending"
    assert t["accepted"] is False
    assert t["from_site_name"] == "North Yard"
    assert t["to_site_name"] == "South Tower"
    assert t["equipment_name"] == "Concrete Mixer"
    assert t["requested_by_username"] == "nora"
    assert t["requested_by_email"] == "nora@example.com"
    assert t["vehicle_number"] == "TRK-42"


def test_approval_moves_units_and_conserves_total(client, db, sup_north, sup_south, north, south, stocked):
    before = total_units(db)
    t = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=2)
    r = client.post(f"/transfers/{t['id']}/approve", headers=auth(sup_south))
    assert r.status_code == 200
    assert r.json()["status"] == "approved"
    assert r.json()["accepted"] is True
    assert r.json()["approved_by"] == str(sup_south.id)

    assert _site_rows(db, north)[("Concrete Mixer", False)] == 3
    # merged into the destination's existing owned row
    assert _site_rows(db, south) == {("Concrete Mixer", False): 3}
    assert total_units(db) == before


def test_full_transfer_deletes_source_and_keeps_rental_flag(client, db, admin, north, south, sup_north, stocked):
    before = total_units(db)
    t = _transfer(client, sup_north, equipment_id=stocked["lift"].id, to_site_id=str(south.id), quantity=2)
    assert client.post(f"/transfers/{t['id']}/approve", headers=auth(admin)).status_code == 200
    assert ("Boom Lift", True) not in _site_rows(db, north)
    assert _site_rows(db, south)[("Boom Lift", True)] == 2
    assert total_units(db) == before
    db.expire_all()
    stored = db.get(EquipmentTransfer, t["id"])
    assert stored.equipment_id is None
    assert stored.equipment_name == "Boom Lift"


def test_source_supervisor_cannot_approve(client, sup_north, south, stocked):
    t = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=1)
    assert client.post(f"/transfers/{t['id']}/approve", headers=auth(sup_north)).status_code == 403
    assert client.post(f"/transfers/{t['id']}/reject", headers=auth(sup_north)).status_code == 403


def test_second_decision_conflicts_and_changes_nothing(client, db, sup_north, sup_south, north, south, stocked):
    t = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=2)
    assert client.post(f"/transfers/{t['id']}/approve", headers=auth(sup_south)).status_code == 200
    snapshot = (_site_rows(db, north), _site_rows(db, south))
    assert client.post(f"/transfers/{t['id']}/approve", headers=auth(sup_south)).status_code == 409
    assert client.post(f"/transfers/{t['id']}/reject", headers=auth(sup_south)).status_code == 409
    assert client.post(f"/transfers/{t['id']}/cancel", headers=auth(sup_north)).status_code == 409
    assert (_site_rows(db, north), _site_rows(db, south)) == snapshot


def test_approval_fails_whole_when_source_shrank(client, db, admin, sup_north, north, south, stocked):
    t = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=4)
    stocked["mixer"].quantity = 3
    db.commit()
    before_north, before_south = _site_rows(db, north), _site_rows(db, south)
    r = client.post(f"/transfers/{t['id']}/approve", headers=auth(admin))
    assert r.status_code == 409
    assert _site_rows(db, north) == before_north
    assert _site_rows(db, south) == before_south
    db.expire_all()
    assert db.get(EquipmentTransfer, t["id"]).status == "pending"


def test_approving_transfer_of_deleted_row_conflicts(client, db, admin, sup_north, north, south, stocked):
    t = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=2)
    r = client.request("DELETE", "/equipment/groups", json={"ids": [stocked["mixer"].id]}, headers=auth(admin))
    assert r.status_code == 200
    before_south = _site_rows(db, south)
    r = client.post(f"/transfers/{t['id']}/approve", headers=auth(admin))
    assert r.status_code == 409
    assert _site_rows(db, south) == before_south
    db.expire_all()
    stored = db.get(EquipmentTransfer, t["id"])
    assert stored.status == "pending"
    assert stored.equipment_id is None
    assert stored.equipment_name == "Concrete Mixer"


def test_reject_and_cancel_leave_inventory(client, db, admin, sup_north, sup_south, north, south, stocked):
    before = (_site_rows(db, north), _site_rows(db, south))
    a = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=1)
    b = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=1)
    r = client.post(f"/transfers/{a['id']}/reject", headers=auth(sup_south))
    assert r.json()["status"] == "rejected"
    assert client.post(f"/transfers/{b['id']}/cancel", headers=auth(sup_south)).status_code == 403
    r = client.post(f"/transfers/{b['id']}/cancel", headers=auth(sup_north))
    assert r.json()["status"] == "cancelled"
    assert (_site_rows(db, north), _site_rows(db, south)) == before


def test_create_validation(client, db, sup_north, north, south, stocked):
    mixer = stocked["mixer"].id
    r = client.post("/transfers", json={"equipment_id": mixer, "to_site_id": str(north.id), "quantity": 1}, headers=auth(sup_north))
    assert r.status_code == 400
    r = client.post("/transfers", json={"equipment_id": mixer, "to_site_id": str(south.id), "quantity": 6}, headers=auth(sup_north))
    assert r.status_code == 400
    r = client.post("/transfers", json={"equipment_id": mixer, "to_site_id": str(south.id), "quantity": 0}, headers=auth(sup_north))
    assert r.status_code == 422
    r = client.post("/transfers", json={"equipment_id": stocked["south_mixer"].id, "to_site_id": str(south.id), "quantity": 1}, headers=auth(sup_north))
    assert r.status_code == 400


def test_transaction_log_lists_pending_first(client, db, admin, sup_north, sup_south, south, stocked):
    first = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=1)
    second = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=1)
    third = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=1)
    client.post(f"/transfers/{first['id']}/approve", headers=auth(sup_south))
    log = client.get("/transfers", headers=auth(admin)).json()
    assert [t["id"] for t in log] == [second["id"], third["id"], first["id"]]
    assert [t["accepted"] for t in log] == [False, False, True]


def test_incoming_and_outgoing(client, db, sup_north, sup_south, north, south, stocked):
    t = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=1)
    assert [x["id"] for x in client.get("/transfers/outgoing", headers=auth(sup_north)).json()] == [t["id"]]
    assert client.get("/transfers/incoming", headers=auth(sup_north)).json() == []
    assert [x["id"] for x in client.get("/transfers/incoming", headers=auth(sup_south)).json()] == [t["id"]]
    dash = client.get("/dashboard/supervisor", headers=auth(sup_south)).json()
    assert [x["id"] for x in dash["incoming_pending"]] == [t["id"]]


def test_supervisor_of_third_site_cannot_decide(client, db, sup_north, south, stocked):
    east = make_site(db, "East Depot")
    outsider = make_user(db, "eve@example.com", site=east)
    t = _transfer(client, sup_north, equipment_id=stocked["mixer"].id, to_site_id=str(south.id), quantity=1)
    assert client.post(f"/transfers/{t['id']}/approve", headers=auth(outsider)).status_code == 403


def test_photo_upload_stores_file(client, storage, sup_north):
    r = client.post(
        "/transfers/photo",
        files={"file": ("truck photo.JPG", b"\xff\xd8\xff fake jpeg", "image/jpeg")},
        headers=auth(sup_north),
    )
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["key"].startswith("transfers/")
    assert body["key"].endswith(".jpg")
    assert storage.exists(body["key"])
    served = client.get(f"/files/local/{body['key']}")
    assert served.status_code == 200
    assert served.content == b"\xff\xd8\xff fake jpeg"
    assert body["url"].endswith(f"/files/local/{body['key']}")


def test_photo_upload_rejects_non_images(client, sup_north):
    r = client.post(
        "/transfers/photo",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=auth(sup_north),
    )
    assert r.status_code == 400
