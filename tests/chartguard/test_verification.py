import threading
from datetime import date, datetime, timezone

import pytest

from src.chartguard.domain.models.finding import Finding, FindingKind
from src.chartguard.domain.models.verification import (
    SourceType,
    VerificationAction,
    VerificationItem,
    VerificationStatus,
)
from src.chartguard.errors import ConflictError, NotFoundError, ValidationError
from src.chartguard.infra.db.inmemory import InMemoryVerificationItemRepository
from src.chartguard.services.verification.attribution import estimate_confidence, format_attributed
from src.chartguard.services.verification.service import ConfidencePolicy, VerificationLedger

BNP = Finding(kind=FindingKind.LAB, name="BNP", value="450", unit="pg/mL", date=date(2026, 2, 25))


@pytest.fixture
def repository(envelope):
    return InMemoryVerificationItemRepository(envelope)


@pytest.fixture
def ledger(repository):
    return VerificationLedger(repository)


def register(ledger, finding=BNP, source=SourceType.EMR_IMPORT, confidence=None):
    return ledger.register(
        finding,
        source,
        confidence,
        patient_id="pat-1",
        resource_type="Labs",
        resource_id="entry-1",
    )


def test_verify_then_dispute_is_rejected(ledger):
    item = register(ledger, confidence=2)
    assert item.status is VerificationStatus.UNVERIFIED
    assert item.label == "BNP: 450 pg/mL"

    verified = ledger.transition(item.id, VerificationAction.VERIFY, "dr-1")
    assert verified.status is VerificationStatus.VERIFIED
    assert verified.verified_by == "dr-1"
    assert verified.verified_at is not None

    with pytest.raises(ConflictError):
        ledger.transition(item.id, VerificationAction.DISPUTE, "dr-2")

    stored = ledger.get(item.id)
    assert stored.status is VerificationStatus.VERIFIED
    assert stored.verified_by == "dr-1"


def test_disputed_is_terminal(ledger):
    item = register(ledger)
    ledger.transition(item.id, VerificationAction.DISPUTE, "dr-1")
    with pytest.raises(ConflictError):
        ledger.transition(item.id, VerificationAction.VERIFY, "dr-1")
    assert ledger.get(item.id).status is VerificationStatus.DISPUTED


def test_concurrent_reviewers_exactly_one_wins(ledger):
    item = register(ledger)
    barrier = threading.Barrier(2)
    outcomes = []

    def review(action, reviewer):
        barrier.wait()
        try:
            outcomes.append(ledger.transition(item.id, action, reviewer).status)
        except ConflictError:
            outcomes.append("conflict")

    threads = [
        threading.Thread(target=review, args=(VerificationAction.VERIFY, "dr-1")),
        threading.Thread(target=review, args=(VerificationAction.DISPUTE, "dr-2")),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("conflict") == 1
    winner = next(o for o in outcomes if o != "conflict")
    assert ledger.get(item.id).status is winner


def test_stale_read_loses_compare_and_set(envelope):
    class StaleRepository(InMemoryVerificationItemRepository):
        """Serves the first copy it read, as a second reviewer's cache would."""

        def __init__(self, envelope):
            super().__init__(envelope)
            self.stale = {}

        def get(self, item_id):
            if item_id not in self.stale:
                self.stale[item_id] = super().get(item_id)
            return self.stale[item_id]

    repository = StaleRepository(envelope)
    ledger = VerificationLedger(repository)
    item = register(ledger)
    ledger.get(item.id)
    ledger.transition(item.id, VerificationAction.VERIFY, "dr-1")

    with pytest.raises(ConflictError):
        ledger.transition(item.id, VerificationAction.DISPUTE, "dr-2")


def test_clinician_findings_are_not_tracked(ledger):
    with pytest.raises(ValidationError):
        register(ledger, source=SourceType.CLINICIAN)


@pytest.mark.parametrize("confidence", [-1, 4])
def test_confidence_outside_range_is_rejected(ledger, confidence):
    with pytest.raises(ValidationError):
        register(ledger, confidence=confidence)


def test_confidence_defaults_from_policy(repository):
    ledger = VerificationLedger(repository, ConfidencePolicy({SourceType.DEVICE: 3}, default=1))
    assert register(ledger, source=SourceType.DEVICE).confidence == 3
    assert register(ledger, source=SourceType.PATIENT_SMS).confidence == 1
    assert VerificationLedger(repository).policy.confidence_for(SourceType.SYSTEM) == 0


def test_unknown_item_raises_not_found(ledger):
    with pytest.raises(NotFoundError):
        ledger.transition("missing", VerificationAction.VERIFY, "dr-1")


def test_pending_queue_lists_unverified_oldest_first(ledger):
    first = register(ledger)
    second = register(ledger, finding=Finding(kind=FindingKind.LAB, name="INR", value="2.5"))
    third = register(ledger, finding=Finding(kind=FindingKind.CONDITION, name="atrial fibrillation"))
    ledger.transition(second.id, VerificationAction.VERIFY, "dr-1")

    assert [i.id for i in ledger.list_pending("pat-1")] == [first.id, third.id]
    assert ledger.list_pending("pat-2") == []


def test_label_is_stored_encrypted(ledger, repository):
    register(ledger)
    (row,) = repository.raw_rows()
    assert "label" not in row
    assert "BNP" not in row["enc_label"]


def make_item(**overrides):
    values = dict(
        id="item-1",
        patient_id="pat-1",
        resource_type="Labs",
        resource_id="entry-1",
        label="BNP: 450 pg/mL",
        source_type=SourceType.EMR_IMPORT,
        confidence=2,
        created_at=datetime(2026, 2, 25, 8, 0, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return VerificationItem(**values)


def test_format_attributed_per_status():
    assert format_attributed(make_item()) == "[UNVERIFIED - imported from EMR 2026-02-25] BNP: 450 pg/mL"
    verified = make_item(
        status=VerificationStatus.VERIFIED,
        verified_by="dr-1",
        verified_at=datetime(2026, 2, 26, 9, 0, tzinfo=timezone.utc),
    )
    assert format_attributed(verified) == "[VERIFIED by dr-1 2026-02-26] BNP: 450 pg/mL"
    disputed = make_item(status=VerificationStatus.DISPUTED, verified_by="dr-2")
    assert format_attributed(disputed) == "[DISPUTED by dr-2] BNP: 450 pg/mL"


@pytest.mark.parametrize(
    "message, expected",
    [
        ("I take metoprolol 25 mg twice a day", 3),
        ("my cardiologist started me on Eliquis", 3),
        ("I'm on lisinopril", 2),
        ("I take something for cholesterol", 1),
        ("feeling fine today", 0),
    ],
)
def test_estimate_confidence(message, expected):
    assert estimate_confidence(message) == expected
