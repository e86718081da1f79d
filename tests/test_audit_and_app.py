import pytest

from conftest import auth, make_equipment
from equiptrack.models.models import AuditLog
from equiptrack.services.audit import compute_diff, verify_audit_log
from equiptrack.storage.local_provider import LocalStorageProvider


def test_transfer_approval_writes_verifiable_audit_row(client, db, admin, sup_north, north, south):
    row = make_equipment(db, north, "Ladder", 3)
    t = client.post(
        "/transfers",
        json={"equipment_id": row.id, "to_site_id": str(south.id), "quantity": 1},
        headers=auth(sup_north),
    ).json()
    client.post(f"/transfers/{t['id']}/approve", headers=auth(admin))

    entries = client.get(
        "/audit", params={"entity_type": "transfer", "entity_id": str(t["id"])}, headers=auth(admin)
    ).json()
    assert {e["action"] for e in entries} == {"CREATE", "APPROVE"}
    approve = next(e for e in entries if e["action"] == "APPROVE")
    assert approve["actor_id"] == str(admin.id)
    assert approve["actor_role"] == "admin"
    assert approve["context"]["quantity"] == 1
    assert approve["context"]["from_site_id"] == str(north.id)
    assert all(e["verified"] for e in entries)


def test_tampered_audit_row_fails_verification(client, db, admin, sup_north):
    client.post("/requests", json={"type": "buy", "equipment_name": "Drill", "quantity": 1}, headers=auth(sup_north))
    entry = db.query(AuditLog).filter(AuditLog.entity_type == "request").one()
    assert verify_audit_log(entry)
    entry.context = {**entry.context, "quantity": 99}
    assert not verify_audit_log(entry)


def test_failed_approval_leaves_no_audit_row(client, db, admin, sup_north, north):
    row = make_equipment(db, north, "Ladder", 2)
    req = client.post(
        "/requests", json={"type": "sell", "equipment_id": row.id, "quantity": 2}, headers=auth(sup_north)
    ).json()
    row.quantity = 1
    db.commit()
    assert client.post(f"/requests/{req['id']}/approve", headers=auth(admin)).status_code == 409
    db.expire_all()
    actions = [e.action for e in db.query(AuditLog).filter(AuditLog.entity_id == req["id"])]
    assert actions == ["CREATE"]


def test_compute_diff():
    assert compute_diff({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}) == {
        "b": {"before": 2, "after": 3},
        "c": {"before": None, "after": 4},
    }


def test_admin_dashboard_counts(client, db, admin, sup_north, north, south):
    make_equipment(db, north, "Ladder", 3)
    make_equipment(db, south, "Drill", 2)
    client.post("/requests", json={"type": "buy", "equipment_name": "Saw", "quantity": 1}, headers=auth(sup_north))
    body = client.get("/dashboard/admin", headers=auth(admin)).json()
    assert body == {
        "total_sites": 2,
        "total_users": 2,
        "total_supervisors": 1,
        "unassigned_sites": 1,
        "total_equipment_units": 5,
        "pending_requests": 1,
        "pending_transfers": 0,
    }


def test_healthz_and_request_id(client):
    r = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers["X-Request-ID"] == "abc-123"
    assert client.get("/healthz").headers["X-Request-ID"]


def test_local_storage_refuses_keys_outside_root(tmp_path):
    storage = LocalStorageProvider(str(tmp_path))
    with pytest.raises(ValueError):
        storage.path_for("../outside.txt")
    assert storage.exists("../outside.txt") is False
    storage.put("transfers/a.jpg", b"x")
    assert storage.exists("transfers/a.jpg")
    storage.delete("transfers/a.jpg")
    assert not storage.exists("transfers/a.jpg")


def test_missing_local_file_is_404(client):
    assert client.get("/files/local/transfers/nope.jpg").status_code == 404
