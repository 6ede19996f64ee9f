from datetime import datetime, timedelta, timezone

from contractdesk.models.agreement import AgreementStatus
from contractdesk.models.client_link import LinkStatus
from contractdesk.services.status import LinkFact, StatusFacts, derive, derive_link_status

NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
LATER = NOW + timedelta(days=2)


def _facts(roster=(), provider=False, signed=(), links=()):
    return StatusFacts(
        roster=frozenset(roster),
        provider_signed=provider,
        signed_client_ids=frozenset(signed),
        links=tuple(LinkFact(client_id=cid, expires_at=exp) for cid, exp in links),
    )


def test_nothing_issued_or_signed_is_draft():
    assert derive(_facts(roster=[1]), NOW).agreement == AgreementStatus.draft


def test_issued_link_makes_agreement_pending():
    derived = derive(_facts(roster=[1], links=[(1, LATER)]), NOW)
    assert derived.agreement == AgreementStatus.pending
    assert derived.links == {1: LinkStatus.pending}


def test_provider_signature_alone_is_pending():
    assert derive(_facts(roster=[1], provider=True), NOW).agreement == AgreementStatus.pending


def test_completed_requires_provider_and_every_roster_client():
    links = [(1, LATER), (2, LATER)]
    assert derive(_facts(roster=[1, 2], provider=True, signed=[1], links=links), NOW).agreement == AgreementStatus.pending
    assert derive(_facts(roster=[1, 2], provider=False, signed=[1, 2], links=links), NOW).agreement == AgreementStatus.pending
    assert derive(_facts(roster=[1, 2], provider=True, signed=[1, 2], links=links), NOW).agreement == AgreementStatus.completed


def test_client_removed_from_roster_no_longer_gates_completion():
    links = [(1, LATER), (2, LATER)]
    assert derive(_facts(roster=[1], provider=True, signed=[1], links=links), NOW).agreement == AgreementStatus.completed


def test_client_added_to_roster_reopens_completion():
    links = [(1, LATER)]
    assert derive(_facts(roster=[1, 3], provider=True, signed=[1], links=links), NOW).agreement == AgreementStatus.pending


def test_empty_roster_never_completes():
    assert derive(_facts(roster=[], provider=True), NOW).agreement == AgreementStatus.pending


def test_link_expiry_is_derived_from_now():
    assert derive_link_status(NOW, signed=False, now=NOW) == LinkStatus.pending
    assert derive_link_status(NOW, signed=False, now=NOW + timedelta(seconds=1)) == LinkStatus.expired


def test_signed_link_stays_signed_after_expiry():
    assert derive_link_status(NOW, signed=True, now=NOW + timedelta(days=30)) == LinkStatus.client_signed


def test_naive_expiry_is_treated_as_utc():
    naive = datetime(2025, 3, 3, 9, 0)
    assert derive_link_status(naive, signed=False, now=NOW + timedelta(minutes=1)) == LinkStatus.expired
