"""Interleaved writers on one agreement, each with its own session."""
from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import SIGNATURE_IMAGE, add_client, agreement_payload

from contractdesk.database import SessionLocal
from contractdesk.dependencies import Principal
from contractdesk.exceptions import BudgetExceededError
from contractdesk.models import Agreement, AgreementPaymentMilestone
from contractdesk.services import signature_collector
from contractdesk.services.agreement_store import load_agreement, update_agreement
from contractdesk.services.signature_collector import SignatureInput
from contractdesk.services.status import derive, facts_for
from contractdesk.services.validator import MilestoneDraft

EDIT_WINDOW = timedelta(days=2)


@pytest.fixture
def sessions():
    opened = [SessionLocal(), SessionLocal()]
    yield opened
    for session in opened:
        session.close()


def test_budget_holds_across_interleaved_edits(api, auth, owner, project, sessions, clock, db):
    payload = agreement_payload(
        project.id,
        payment_milestones=[
            {"description": "Design sign-off", "amount": "3000", "date": "2025-03-20"},
            {"description": "Launch", "amount": "3000", "date": "2025-04-30"},
        ],
    )
    created = api.post("/agreements", json=payload, headers=auth).json()
    design, launch = (m["id"] for m in created["payment_terms"]["milestones"])
    principal = Principal(user_id=owner.id, email=owner.email)
    first, second = sessions

    # The second editor loaded 3000 + 3000 before the first editor commits
    stale = load_agreement(second, owner.id, created["id"])
    assert sum(m.amount for m in stale.payment_terms.milestones) == 6000

    update_agreement(
        first,
        principal,
        created["id"],
        {"milestones": (MilestoneDraft(id=design), MilestoneDraft(id=launch, amount=Decimal("7000")))},
        clock.now(),
    )
    with pytest.raises(BudgetExceededError) as exc:
        update_agreement(
            second,
            principal,
            created["id"],
            {"milestones": (MilestoneDraft(id=design, amount=Decimal("7000")), MilestoneDraft(id=launch))},
            clock.now(),
        )
    assert exc.value.total == 14000

    amounts = sorted(m.amount for m in db.query(AgreementPaymentMilestone).all())
    assert amounts == [3000, 7000]
    assert sum(amounts) <= project.budget


def test_interleaved_client_signatures_leave_status_consistent(api, auth, owner, project, roster_client, sessions, clock, db):
    other = add_client(db, owner, project, name="Dev Client", email="dev@example.com", organization=None)
    created = api.post("/agreements", json=agreement_payload(project.id), headers=auth).json()
    api.post(
        f"/agreements/{created['id']}/signature",
        json={"signer_name": "Priya Provider", "signature_image": SIGNATURE_IMAGE},
        headers=auth,
    )
    sent = api.post(f"/agreements/{created['id']}/send", json={"client_ids": [roster_client.id, other.id]}, headers=auth)
    links = {l["client_id"]: l["token"] for l in sent.json()["links"]}
    first, second = sessions
    now = clock.now()

    # Both signers have the pending agreement open before either submits
    for session, client_id in ((first, roster_client.id), (second, other.id)):
        page = signature_collector.resolve(session, links[client_id], now, "INR", EDIT_WINDOW)
        assert page.snapshot.status == "pending"

    a = signature_collector.submit(first, links[roster_client.id], SignatureInput("Carol Client", SIGNATURE_IMAGE), now, "INR", EDIT_WINDOW)
    b = signature_collector.submit(second, links[other.id], SignatureInput("Dev Client", SIGNATURE_IMAGE), now, "INR", EDIT_WINDOW)
    assert a.agreement_status == "pending"
    assert b.agreement_status == "completed"

    db.expire_all()
    agreement = db.get(Agreement, created["id"])
    assert agreement.status == derive(facts_for(db, agreement), now).agreement.value == "completed"
