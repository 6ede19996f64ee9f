from datetime import timedelta

import pytest
from conftest import OTHER_SIGNATURE_IMAGE, SIGNATURE_IMAGE, add_client, agreement_payload

from contractdesk.database import SessionLocal
from contractdesk.dependencies import Principal
from contractdesk.exceptions import AgreementValidationError
from contractdesk.models import AgreementSignature, AuditLog, ClientLink
from contractdesk.services import signature_collector
from contractdesk.services.signing_links import generate_token, issue_link


def _create(api, auth, project, **overrides):
    r = api.post("/agreements", json=agreement_payload(project.id, **overrides), headers=auth)
    assert r.status_code == 201, r.text
    return r.json()


def _provider_signs(api, auth, agreement_id):
    r = api.post(
        f"/agreements/{agreement_id}/signature",
        json={"signer_name": "Priya Provider", "signature_image": SIGNATURE_IMAGE},
        headers=auth,
    )
    assert r.status_code == 200, r.text
    return r.json()


def _send(api, auth, agreement_id, client_ids):
    r = api.post(f"/agreements/{agreement_id}/send", json={"client_ids": client_ids}, headers=auth)
    assert r.status_code == 200, r.text
    return r.json()


def _sign(api, token, name="Carol Client", image=SIGNATURE_IMAGE, method="post", **extra):
    return api.request(method.upper(), f"/agreements/sign/{token}", json={"signer_name": name, "signature_image": image, **extra})


def test_budget_scenario_completes_when_provider_and_sole_client_sign(api, auth, project, roster_client):
    agreement = _create(api, auth, project)
    assert agreement["status"] == "draft"
    assert agreement["payment_terms"]["milestone_total"] in ("10000.00", "10000")

    assert _provider_signs(api, auth, agreement["id"])["status"] == "pending"

    sent = _send(api, auth, agreement["id"], [roster_client.id])
    assert sent["status"] == "pending"
    token = sent["links"][0]["token"]
    assert len(token) >= 32

    r = _sign(api, token)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["created"] is True
    assert body["agreement_status"] == "completed"

    current = api.get(f"/agreements/{agreement['id']}", headers=auth).json()
    assert current["status"] == "completed"
    assert current["client_links"][0]["status"] == "client_signed"
    assert {s["signer_type"] for s in current["signatures"]} == {"service_provider", "client"}


def test_link_expires_after_ttl(api, auth, project, roster_client, clock):
    agreement = _create(api, auth, project)
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]

    clock.advance(days=3)
    r = _sign(api, token)
    assert r.status_code == 410
    assert r.json()["code"] == "token_expired"
    assert r.json()["expired"] is True

    page = api.get(f"/agreements/sign/{token}")
    assert page.status_code == 410
    assert page.json()["expired"] is True


def test_expired_is_distinct_from_unknown_token(api):
    r = _sign(api, "f" * 64)
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"
    assert api.get("/agreements/sign/" + "f" * 64).status_code == 404


def test_reissue_invalidates_the_old_token(api, auth, project, roster_client, clock, db):
    agreement = _create(api, auth, project)
    old = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]
    clock.advance(days=3)
    reissued = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]
    assert reissued["token"] != old
    assert reissued["reissue_count"] == 1

    assert api.get(f"/agreements/sign/{old}").status_code == 404
    assert _sign(api, old).status_code == 404

    page = api.get(f"/agreements/sign/{reissued['token']}")
    assert page.status_code == 200
    assert page.json()["link_status"] == "pending"
    assert db.query(ClientLink).count() == 1


def test_signing_page_states(api, auth, project, roster_client):
    agreement = _create(api, auth, project)
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]

    page = api.get(f"/agreements/sign/{token}").json()
    assert page["signed"] is False
    assert page["can_edit"] is False
    assert page["agreement"]["id"] == agreement["id"]
    assert [s["heading"] for s in page["document"]["sections"]][0] == "Scope of Work"

    assert _sign(api, token).status_code == 200
    page = api.get(f"/agreements/sign/{token}").json()
    assert page["signed"] is True
    assert page["link_status"] == "client_signed"
    assert page["signer_name"] == "Carol Client"
    assert page["can_edit"] is True


def test_resubmission_within_window_is_idempotent(api, auth, project, roster_client, clock, db):
    agreement = _create(api, auth, project)
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]
    assert _sign(api, token).status_code == 200

    clock.advance(hours=5)
    r = _sign(api, token, method="put")
    assert r.status_code == 200, r.text
    assert r.json()["created"] is False
    assert r.json()["changed"] is False

    # A second POST on a signed link inside the window is an update, not a second row
    r = _sign(api, token)
    assert r.status_code == 200
    assert r.json()["created"] is False
    assert db.query(AgreementSignature).filter(AgreementSignature.signer_type == "client").count() == 1


def test_update_replaces_signature_within_window(api, auth, project, roster_client, clock, db):
    agreement = _create(api, auth, project)
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]
    assert _sign(api, token).status_code == 200
    first = db.query(AgreementSignature).filter(AgreementSignature.signer_type == "client").one()
    first_sha = first.signature_image_sha256

    clock.advance(days=1)
    r = _sign(api, token, name="Carol C. Client", image=OTHER_SIGNATURE_IMAGE, method="put")
    assert r.status_code == 200, r.text
    assert r.json()["changed"] is True

    db.expire_all()
    sig = db.query(AgreementSignature).filter(AgreementSignature.signer_type == "client").one()
    assert sig.signer_name == "Carol C. Client"
    assert sig.signature_image_sha256 != first_sha
    # The edit window stays anchored to the first signature
    link = db.query(ClientLink).one()
    assert link.signed_at.replace(tzinfo=None) == sig.timestamp.replace(tzinfo=None) - timedelta(days=1)


def test_update_outside_window_is_locked(api, auth, project, roster_client, clock):
    agreement = _create(api, auth, project)
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]
    assert _sign(api, token).status_code == 200

    clock.advance(days=2, minutes=1)
    r = _sign(api, token, method="put")
    assert r.status_code == 423
    assert r.json()["code"] == "signature_locked"
    assert api.get(f"/agreements/sign/{token}").json()["can_edit"] is False


def test_update_after_completion_is_locked(api, auth, project, roster_client):
    agreement = _create(api, auth, project)
    _provider_signs(api, auth, agreement["id"])
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]
    assert _sign(api, token).json()["agreement_status"] == "completed"

    r = _sign(api, token, method="put")
    assert r.status_code == 423


def test_update_without_signature_is_not_found(api, auth, project, roster_client):
    agreement = _create(api, auth, project)
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]
    r = _sign(api, token, method="put")
    assert r.status_code == 404


def test_stale_document_hash_is_rejected(api, auth, project, roster_client, db):
    agreement = _create(api, auth, project)
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]

    r = _sign(api, token, document_hash="0" * 64)
    assert r.status_code == 409
    assert r.json()["code"] == "document_changed"
    assert db.query(AuditLog).filter(AuditLog.category == "failed_attempt").count() == 1

    current_hash = api.get(f"/agreements/sign/{token}").json()["document"]["document_hash"]
    assert _sign(api, token, document_hash=current_hash).status_code == 200


def test_bad_signature_image_is_a_validation_error(api, auth, project, roster_client):
    agreement = _create(api, auth, project)
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]
    r = _sign(api, token, image="data:image/png;base64,@@not-base64@@")
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "signature_image"


def test_completion_waits_for_every_roster_client(api, auth, project, roster_client, db, owner):
    second = add_client(db, owner, project, name="Dev Client", email="dev@example.com", organization=None)
    agreement = _create(api, auth, project)
    _provider_signs(api, auth, agreement["id"])
    links = {l["client_id"]: l["token"] for l in _send(api, auth, agreement["id"], [roster_client.id, second.id])["links"]}

    assert _sign(api, links[roster_client.id]).json()["agreement_status"] == "pending"
    assert _sign(api, links[second.id], name="Dev Client").json()["agreement_status"] == "completed"


def test_roster_changes_rederive_status(api, auth, project, roster_client, db, owner):
    second = add_client(db, owner, project, name="Dev Client", email="dev@example.com", organization=None)
    agreement = _create(api, auth, project)
    _provider_signs(api, auth, agreement["id"])
    token = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]
    assert _sign(api, token).json()["agreement_status"] == "pending"

    r = api.put(f"/projects/{project.id}/clients", json={"client_ids": [roster_client.id]}, headers=auth)
    assert r.status_code == 200
    assert r.json()["agreement_status"] == "completed"

    r = api.put(f"/projects/{project.id}/clients", json={"client_ids": [roster_client.id, second.id]}, headers=auth)
    assert r.json()["agreement_status"] == "pending"


def test_token_rotated_before_the_lock_cannot_sign(api, auth, project, roster_client, db, monkeypatch):
    agreement = _create(api, auth, project)
    old = _send(api, auth, agreement["id"], [roster_client.id])["links"][0]["token"]
    find_link = signature_collector._find_link

    def reissued_meanwhile(session, token):
        link = find_link(session, token)
        other = SessionLocal()
        try:
            row = other.query(ClientLink).filter(ClientLink.token == token).one()
            row.token = generate_token()
            row.reissue_count += 1
            other.commit()
        finally:
            other.close()
        return link

    monkeypatch.setattr(signature_collector, "_find_link", reissued_meanwhile)
    r = _sign(api, old)
    assert r.status_code == 404
    assert db.query(AgreementSignature).count() == 0
    assert db.query(ClientLink).one().signed_at is None


def test_client_removed_from_roster_cannot_sign(api, auth, project, roster_client, db, owner):
    second = add_client(db, owner, project, name="Dev Client", email="dev@example.com", organization=None)
    agreement = _create(api, auth, project)
    links = {l["client_id"]: l["token"] for l in _send(api, auth, agreement["id"], [roster_client.id, second.id])["links"]}

    r = api.put(f"/projects/{project.id}/clients", json={"client_ids": [second.id]}, headers=auth)
    assert r.status_code == 200

    r = _sign(api, links[roster_client.id])
    assert r.status_code == 404
    assert db.query(AgreementSignature).count() == 0
    assert db.query(AuditLog).filter(AuditLog.category == "failed_attempt").count() == 1

    preview = api.get(f"/agreements/{agreement['id']}/preview", headers=auth).json()
    assert "Carol Client" not in preview["preamble"]


def test_issue_link_for_a_single_client(api, auth, project, roster_client, owner, db, clock):
    agreement = _create(api, auth, project)
    principal = Principal(user_id=owner.id, email=owner.email)

    token = issue_link(db, principal, agreement["id"], roster_client.id, timedelta(days=2), clock.now())
    assert len(token) == 64
    assert api.get(f"/agreements/sign/{token}").json()["link_status"] == "pending"

    assert _sign(api, token).status_code == 200
    with pytest.raises(AgreementValidationError):
        issue_link(db, principal, agreement["id"], roster_client.id, timedelta(days=2), clock.now())
