from conftest import SIGNATURE_IMAGE, add_client, agreement_payload

from contractdesk.models import Agreement, AgreementPaymentMilestone, ClientLink, User
from contractdesk.services import notifications
from contractdesk.services.auth import create_access_token
from contractdesk.services.documents import pdf_filename


def _create(api, auth, project, **overrides):
    r = api.post("/agreements", json=agreement_payload(project.id, **overrides), headers=auth)
    assert r.status_code == 201, r.text
    return r.json()


def test_health(api):
    assert api.get("/health").json() == {"status": "healthy"}


def test_owner_routes_require_a_token(api, project):
    r = api.post("/agreements", json=agreement_payload(project.id))
    assert r.status_code == 401
    assert r.json()["code"] == "unauthorized"
    assert api.get("/agreements/1", headers={"Authorization": "Bearer nonsense"}).status_code == 401


def test_create_and_read_back(api, auth, project):
    created = _create(api, auth, project)
    assert created["project_id"] == project.id
    assert created["project_name"] == "Website Revamp"
    assert created["deliverables"] == ["Homepage design", "CMS integration"]
    assert [m["description"] for m in created["payment_terms"]["milestones"]] == ["Design sign-off", "Launch"]
    assert created["currency"] == "INR"

    by_id = api.get(f"/agreements/{created['id']}", headers=auth).json()
    by_project = api.get(f"/agreements/project/{project.id}", headers=auth).json()
    assert by_id == by_project


def test_one_agreement_per_project(api, auth, project):
    _create(api, auth, project)
    r = api.post("/agreements", json=agreement_payload(project.id), headers=auth)
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "project_id"


def test_create_with_provider_signature(api, auth, project, blob_store):
    payload = agreement_payload(
        project.id,
        service_provider_signature={"signer_name": "Priya Provider", "signature_image": SIGNATURE_IMAGE},
    )
    r = api.post("/agreements", json=payload, headers=auth)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["status"] == "pending"
    assert body["warnings"] == []
    path = body["signatures"][0]["signature_image_path"]
    assert path.startswith(f"signatures/{project.id}/")
    assert path in blob_store.objects


def test_over_budget_update_leaves_milestones_unchanged(api, auth, project, db):
    created = _create(api, auth, project)
    r = api.put(
        f"/agreements/{created['id']}",
        json={
            "payment_milestones": [
                {"description": "A", "amount": "6000", "date": "2025-03-20"},
                {"description": "B", "amount": "6000", "date": "2025-04-30"},
            ]
        },
        headers=auth,
    )
    assert r.status_code == 422
    assert r.json()["code"] == "budget_exceeded"
    assert r.json()["milestone_total"] == "12000.00"

    amounts = sorted(int(m.amount) for m in db.query(AgreementPaymentMilestone).all())
    assert amounts == [4000, 6000]


def test_over_budget_create_is_rejected(api, auth, project, db):
    payload = agreement_payload(
        project.id,
        payment_milestones=[
            {"description": "A", "amount": "6000", "date": "2025-03-20"},
            {"description": "B", "amount": "6000", "date": "2025-04-30"},
        ],
    )
    r = api.post("/agreements", json=payload, headers=auth)
    assert r.status_code == 422
    assert r.json()["code"] == "budget_exceeded"
    assert db.query(Agreement).count() == 0


def test_partial_update_edits_milestones_by_id(api, auth, project):
    created = _create(api, auth, project)
    design, launch = created["payment_terms"]["milestones"]
    r = api.put(
        f"/agreements/{created['id']}",
        json={
            "service_type": "Website redesign",
            "payment_milestones": [{"id": design["id"], "amount": "3500"}, {"id": launch["id"]}],
        },
        headers=auth,
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["service_type"] == "Website redesign"
    assert body["service_provider_name"] == "Priya Provider"
    milestones = body["payment_terms"]["milestones"]
    assert [(m["id"], m["description"]) for m in milestones] == [(design["id"], "Design sign-off"), (launch["id"], "Launch")]
    assert milestones[0]["amount"] in ("3500.00", "3500")


def test_switching_structure_drops_milestones(api, auth, project):
    created = _create(api, auth, project)
    r = api.put(f"/agreements/{created['id']}", json={"payment_structure": "100-upfront"}, headers=auth)
    assert r.status_code == 200
    assert r.json()["payment_terms"]["milestones"] == []


def test_validation_errors_are_field_level(api, auth, project):
    created = _create(api, auth, project)
    r = api.put(
        f"/agreements/{created['id']}",
        json={"service_provider_name": " ", "start_date": "2025-05-01", "end_date": "2025-04-01"},
        headers=auth,
    )
    assert r.status_code == 422
    assert {e["field"] for e in r.json()["errors"]} == {"service_provider_name", "end_date"}


def test_other_owners_agreement_is_not_found(api, auth, project, db):
    created = _create(api, auth, project)
    stranger = User(email="stranger@example.com")
    db.add(stranger)
    db.commit()
    headers = {"Authorization": f"Bearer {create_access_token(stranger.id, stranger.email)}"}
    assert api.get(f"/agreements/{created['id']}", headers=headers).status_code == 404
    assert api.delete(f"/agreements/{created['id']}", headers=headers).status_code == 404
    r = api.post("/agreements", json=agreement_payload(project.id), headers=headers)
    assert r.status_code == 404


def test_completed_agreement_is_immutable(api, auth, project, roster_client):
    created = _create(api, auth, project)
    api.post(
        f"/agreements/{created['id']}/signature",
        json={"signer_name": "Priya Provider", "signature_image": SIGNATURE_IMAGE},
        headers=auth,
    )
    token = api.post(
        f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id]}, headers=auth
    ).json()["links"][0]["token"]
    api.post(f"/agreements/sign/{token}", json={"signer_name": "Carol Client", "signature_image": SIGNATURE_IMAGE})

    r = api.put(f"/agreements/{created['id']}", json={"service_type": "Other"}, headers=auth)
    assert r.status_code == 409
    assert r.json()["code"] == "agreement_immutable"
    assert api.delete(f"/agreements/{created['id']}", headers=auth).status_code == 409
    assert api.post(f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id]}, headers=auth).status_code == 409

    pdf = api.get(f"/agreements/{created['id']}/pdf", headers=auth)
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")


def test_delete_cascades_and_removes_images(api, auth, project, roster_client, db, blob_store):
    payload = agreement_payload(
        project.id,
        service_provider_signature={"signer_name": "Priya Provider", "signature_image": SIGNATURE_IMAGE},
    )
    created = api.post("/agreements", json=payload, headers=auth).json()
    api.post(f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id]}, headers=auth)
    image = created["signatures"][0]["signature_image_path"]
    assert image in blob_store.objects

    r = api.delete(f"/agreements/{created['id']}", headers=auth)
    assert r.status_code == 200
    assert r.json()["deleted"] is True
    assert image not in blob_store.objects
    assert db.query(ClientLink).count() == 0
    assert db.query(AgreementPaymentMilestone).count() == 0
    assert api.get(f"/agreements/{created['id']}", headers=auth).status_code == 404


def test_links_only_for_roster_clients(api, auth, project, roster_client, db, owner):
    outsider = add_client(db, owner, None, name="Olive Outsider", email="olive@example.com")
    created = _create(api, auth, project)
    r = api.post(f"/agreements/{created['id']}/send", json={"client_ids": [outsider.id]}, headers=auth)
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "client_ids"


def test_send_records_email_delivery(api, auth, project, roster_client, db, monkeypatch, clock):
    sent = []

    def fake_send(event):
        sent.append(event)
        return True

    monkeypatch.setattr(notifications, "send_signing_link", fake_send)
    created = _create(api, auth, project)
    body = api.post(f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id]}, headers=auth).json()
    assert body["warnings"] == []
    assert sent[0].client_email == "carol@example.com"
    assert sent[0].token == body["links"][0]["token"]
    assert body["links"][0]["url"].endswith(f"/agreement/sign/{sent[0].token}")
    assert db.query(ClientLink).one().email_sent_at is not None


def test_failed_email_is_a_warning_not_an_error(api, auth, project, roster_client, db):
    created = _create(api, auth, project)
    r = api.post(f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id]}, headers=auth)
    assert r.status_code == 200
    assert r.json()["warnings"]
    link = db.query(ClientLink).one()
    assert link.email_sent_at is None
    assert link.status == "pending"


def test_signed_client_is_skipped_on_resend(api, auth, project, roster_client):
    created = _create(api, auth, project)
    token = api.post(
        f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id]}, headers=auth
    ).json()["links"][0]["token"]
    api.post(f"/agreements/sign/{token}", json={"signer_name": "Carol Client", "signature_image": SIGNATURE_IMAGE})
    body = api.post(f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id]}, headers=auth).json()
    assert body["links"] == []
    assert "already signed" in body["warnings"][0]


def test_preview_matches_signing_page_document(api, auth, project, roster_client):
    created = _create(api, auth, project)
    preview = api.get(f"/agreements/{created['id']}/preview", headers=auth).json()
    token = api.post(
        f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id]}, headers=auth
    ).json()["links"][0]["token"]
    page = api.get(f"/agreements/sign/{token}").json()
    assert page["document"]["document_hash"] == preview["document_hash"]
    assert page["document"]["text"] == preview["text"]
    assert "Carol Client (Acme Ltd)" in preview["preamble"]


def test_signer_pdf(api, auth, project, roster_client):
    created = _create(api, auth, project)
    token = api.post(
        f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id]}, headers=auth
    ).json()["links"][0]["token"]
    r = api.get(f"/agreements/sign/{token}/pdf")
    assert r.status_code == 200
    assert r.content.startswith(b"%PDF")


def test_pdf_with_missing_image_and_non_latin_name(api, auth, project, db, owner, blob_store):
    client = add_client(db, owner, project, name="Łukasz Kowalski", email="lukasz@example.com", organization=None)
    created = _create(api, auth, project)
    token = api.post(
        f"/agreements/{created['id']}/send", json={"client_ids": [client.id]}, headers=auth
    ).json()["links"][0]["token"]

    blob_store.fail_uploads = True
    r = api.post(f"/agreements/sign/{token}", json={"signer_name": "Łukasz Kowalski", "signature_image": SIGNATURE_IMAGE})
    assert r.status_code == 200
    assert any("could not be stored" in w for w in r.json()["warnings"])

    pdf = api.get(f"/agreements/{created['id']}/pdf", headers=auth)
    assert pdf.status_code == 200
    assert pdf.content.startswith(b"%PDF")
    assert "\\u0141ukasz Kowalski" in pdf.headers["x-warnings"]


def test_pdf_filename_is_ascii():
    assert pdf_filename(7, "Łódź Café") == "agreement_7_d___Caf.pdf"
    assert pdf_filename(7) == "agreement_7.pdf"
