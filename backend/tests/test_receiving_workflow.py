import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from backend.app.db.models.models_v1 import (
    BackorderRequest,
    IdempotencyRecord,
    InventoryMovement,
    Party,
    PurchaseOrder,
)
from backend.app.db.models.core_types import BackorderStatus, POStatus
from backend.services.backorders import BackorderCascade, transition_backorder
from backend.services.errors import ConflictError, InternalError, InvalidInputError, NotFoundError
from backend.services.events import EmitResult
from backend.services.idempotency import IDEMPOTENCY_KEY_MAX_LENGTH, IdempotencyGuard
from backend.services.inventory import AppendResult, MovementLedger
from backend.services.procurement import PurchaseOrderStore, ReceiveLine, ReceivingWorkflow

TENANT = "TestTenant"


class RecordingNotifier:
    provider = "memory"

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)
        return EmitResult(emitted=True, provider=self.provider)


class FailingNotifier:
    def emit(self, event):
        raise RuntimeError("provider down")


def _movement_count(db):
    return db.execute(select(func.count()).select_from(InventoryMovement)).scalar_one()


def _receive(db, po, delta, *, line=None, key=None, lot=None, location_id=None, **kw):
    line_ref = line or po.lines[0].id
    wf = ReceivingWorkflow(db, **kw)
    return wf.receive(
        TENANT,
        po.id,
        [ReceiveLine(line_ref=line_ref, delta_qty=delta, lot=lot, location_id=location_id)],
        idempotency_key=key,
    )


# ---------- Scénarios nominaux ----------
def test_partial_then_full_receipt_then_over_receive(db_session, make_po):
    """
    GIVEN
    - une ligne qty_ordered=10, rien reçu

    THEN
    - +4 => qty_received=4, partially-received
    - +6 => qty_received=10, fulfilled
    - +1 => 409 RECEIVE_EXCEEDS_REMAINING, aucun mouvement ajouté
    """
    po = make_po(lines=[{"qty_ordered": 10}])

    po = _receive(db_session, po, 4)
    assert po.lines[0].qty_received == 4
    assert po.status == POStatus.partially_received

    po = _receive(db_session, po, 6)
    assert po.lines[0].qty_received == 10
    assert po.status == POStatus.fulfilled

    before = _movement_count(db_session)
    with pytest.raises(ConflictError) as exc:
        _receive(db_session, po, 1)
    assert exc.value.http_status == 409
    assert exc.value.to_dict() == {
        "code": "RECEIVE_EXCEEDS_REMAINING",
        "message": "Receive exceeds remaining",
        "lineId": po.lines[0].id,
        "ordered": 10,
        "received": 10,
        "remaining": 0,
        "attemptedDelta": 1,
    }
    assert _movement_count(db_session) == before


def test_receipt_appends_receive_movement(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 10, "item_id": "SKU-42"}])
    _receive(db_session, po, 3, lot="LOT-7", location_id="DOCK-1")

    mv = db_session.execute(select(InventoryMovement)).scalar_one()
    assert mv.action.value == "receive"
    assert mv.qty == 3
    assert mv.item_id == "SKU-42"
    assert mv.ref_id == po.id
    assert mv.line_ref == po.lines[0].id
    assert mv.lot == "LOT-7"
    assert mv.location_id == "DOCK-1"


def test_status_stays_partial_until_every_line_is_received(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 2}, {"qty_ordered": 3}])
    l1, l2 = po.lines[0].id, po.lines[1].id

    po = _receive(db_session, po, 2, line=l1)
    assert po.status == POStatus.partially_received

    po = _receive(db_session, po, 3, line=l2)
    assert po.status == POStatus.fulfilled
    assert [l.qty_received for l in po.lines] == [2, 3]


def test_multi_line_request_aggregates_deltas_for_the_same_line(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 5}])
    line_id = po.lines[0].id
    wf = ReceivingWorkflow(db_session)

    with pytest.raises(ConflictError) as exc:
        wf.receive(
            TENANT,
            po.id,
            [
                ReceiveLine(line_ref=line_id, delta_qty=3, lot="A"),
                ReceiveLine(line_ref=line_id, delta_qty=3, lot="B"),
            ],
        )
    assert exc.value.context["attemptedDelta"] == 6
    assert _movement_count(db_session) == 0

    po = wf.receive(
        TENANT,
        po.id,
        [
            ReceiveLine(line_ref=line_id, delta_qty=2, lot="A"),
            ReceiveLine(line_ref=line_id, delta_qty=3, lot="B"),
        ],
    )
    assert po.lines[0].qty_received == 5
    assert po.status == POStatus.fulfilled
    assert _movement_count(db_session) == 2


def test_received_quantity_is_derived_from_ledger(db_session, make_po):
    """
    qty_received stocké sur la ligne n'est pas une autorité : le ledger l'est.
    """
    po = make_po(lines=[{"qty_ordered": 10}])
    po = _receive(db_session, po, 4)

    po.lines[0].qty_received = 0  # dérive volontaire du compteur
    db_session.commit()

    po = _receive(db_session, po, 1)
    assert po.lines[0].qty_received == 5
    with pytest.raises(ConflictError):
        _receive(db_session, po, 6)


# ---------- Idempotence ----------
def test_key_replay_returns_persisted_order_without_new_movement(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 10}])

    first = _receive(db_session, po, 4, key="K")
    snapshot = (first.status, first.lines[0].qty_received, first.updated_at)
    count = _movement_count(db_session)

    # même clé, corps différent : court-circuit avant validation
    second = _receive(db_session, po, 5, key="K")
    assert (second.status, second.lines[0].qty_received, second.updated_at) == snapshot
    assert _movement_count(db_session) == count


def test_key_replay_short_circuits_even_when_order_is_fulfilled(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 10}])
    _receive(db_session, po, 10, key="K")

    again = _receive(db_session, po, 10, key="K")
    assert again.status == POStatus.fulfilled
    assert _movement_count(db_session) == 1


def test_signature_replay_with_different_key_is_deduplicated(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 10}])

    first = _receive(db_session, po, 4, key="K1", lot="LOT-1")
    count = _movement_count(db_session)

    second = _receive(db_session, po, 4, key="K2", lot="LOT-1")
    assert second.lines[0].qty_received == 4
    assert second.status == first.status
    assert _movement_count(db_session) == count


def test_signature_replay_of_invalid_request_is_revalidated(db_session, make_po):
    """
    Over-receive vérifié AVANT la signature : un rejeu devenu invalide
    n'est jamais servi comme succès en cache.
    """
    po = make_po(lines=[{"qty_ordered": 6}])
    _receive(db_session, po, 4, key="K1")

    with pytest.raises(ConflictError):
        _receive(db_session, po, 4, key="K2")


def test_different_lot_is_a_different_signature(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 10}])
    _receive(db_session, po, 2, lot="LOT-1")
    po = _receive(db_session, po, 2, lot="LOT-2")
    assert po.lines[0].qty_received == 4
    assert _movement_count(db_session) == 2


def test_rejected_request_does_not_mark_key(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 3}])
    with pytest.raises(ConflictError):
        _receive(db_session, po, 5, key="K")

    # même clé, requête valide cette fois : appliquée
    po = _receive(db_session, po, 3, key="K")
    assert po.lines[0].qty_received == 3


# ---------- Garde-fous ----------
def test_unknown_order_is_not_found(db_session):
    with pytest.raises(NotFoundError) as exc:
        ReceivingWorkflow(db_session).receive(TENANT, "nope", [ReceiveLine("L1", 1)])
    assert exc.value.code == "PO_NOT_FOUND"
    assert exc.value.http_status == 404


def test_order_of_another_tenant_is_not_found(db_session, make_po):
    po = make_po(tenant_id="OtherTenant", vendor_id=None)
    with pytest.raises(NotFoundError):
        _receive(db_session, po, 1)


@pytest.mark.parametrize(
    "status",
    [POStatus.draft, POStatus.submitted, POStatus.cancelled, POStatus.closed],
)
def test_status_not_receivable(db_session, make_po, status):
    po = make_po(status=status)
    with pytest.raises(ConflictError) as exc:
        _receive(db_session, po, 1)
    assert exc.value.code == "PO_STATUS_NOT_RECEIVABLE"
    assert exc.value.context["status"] == status.value
    assert _movement_count(db_session) == 0


def test_vendor_required(db_session, make_po):
    po = make_po(vendor_id=None)
    with pytest.raises(InvalidInputError) as exc:
        _receive(db_session, po, 1)
    assert exc.value.code == "VENDOR_REQUIRED"
    assert exc.value.http_status == 400


def test_vendor_role_missing(db_session, make_po):
    customer = Party(tenant_id=TENANT, name="Not a vendor", roles=["customer"])
    db_session.add(customer)
    db_session.commit()

    po = make_po(vendor_id=customer.id)
    with pytest.raises(InvalidInputError) as exc:
        _receive(db_session, po, 1)
    assert exc.value.code == "VENDOR_ROLE_MISSING"


def test_vendor_guard_can_be_disabled(db_session, make_po):
    po = make_po(vendor_id=None)
    po = _receive(db_session, po, 1, vendor_guard=False)
    assert po.lines[0].qty_received == 1


def test_empty_lines_rejected(db_session, make_po):
    po = make_po()
    with pytest.raises(InvalidInputError) as exc:
        ReceivingWorkflow(db_session).receive(TENANT, po.id, [])
    assert exc.value.code == "LINES_REQUIRED"


def test_unknown_line_ref_rejected(db_session, make_po):
    po = make_po()
    with pytest.raises(InvalidInputError) as exc:
        _receive(db_session, po, 1, line="does-not-exist")
    assert exc.value.code == "UNKNOWN_LINE_REF"
    assert exc.value.context["lineRef"] == "does-not-exist"


@pytest.mark.parametrize("delta", [0, -3])
def test_non_positive_delta_rejected(db_session, make_po, delta):
    po = make_po()
    with pytest.raises(InvalidInputError) as exc:
        _receive(db_session, po, delta)
    assert exc.value.code == "INVALID_DELTA"
    assert _movement_count(db_session) == 0


def test_legacy_line_reference_is_normalized(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 10, "legacy_ref": "ln_1"}])
    po = _receive(db_session, po, 2, line="ln_1", key="K1")
    assert po.lines[0].qty_received == 2

    mv = db_session.execute(select(InventoryMovement)).scalar_one()
    assert mv.line_ref == po.lines[0].id

    # même effet via l'id stable : même signature
    po = _receive(db_session, po, 2, key="K2")
    assert po.lines[0].qty_received == 2
    assert _movement_count(db_session) == 1


# ---------- Cascade backorders ----------
def test_single_backorder_fulfilled(db_session, make_po, make_backorder):
    bo = make_backorder(qty=5, remaining_qty=5)
    po = make_po(lines=[{"qty_ordered": 10, "backorder_request_ids": [bo.id]}])

    _receive(db_session, po, 5)

    bo = db_session.get(BackorderRequest, bo.id)
    assert bo.status == BackorderStatus.fulfilled
    assert bo.remaining_qty == 0
    assert bo.fulfilled_qty == 5


def test_partial_cascade_updates_remaining(db_session, make_po, make_backorder):
    bo = make_backorder(qty=5, remaining_qty=None, fulfilled_qty=1)
    po = make_po(lines=[{"qty_ordered": 10, "backorder_request_ids": [bo.id]}])

    _receive(db_session, po, 2)

    bo = db_session.get(BackorderRequest, bo.id)
    assert bo.status == BackorderStatus.open
    assert bo.remaining_qty == 2
    assert bo.fulfilled_qty == 3


def test_full_delta_applied_to_every_linked_backorder(db_session, make_po, make_backorder):
    """
    Comportement observé : delta complet sur CHAQUE backorder lié.
    """
    bo1 = make_backorder(qty=5, remaining_qty=5)
    bo2 = make_backorder(qty=5, remaining_qty=5)
    po = make_po(lines=[{"qty_ordered": 10, "backorder_request_ids": [bo1.id, bo2.id]}])

    _receive(db_session, po, 3)

    for bo_id in (bo1.id, bo2.id):
        bo = db_session.get(BackorderRequest, bo_id)
        assert bo.remaining_qty == 2
        assert bo.fulfilled_qty == 3


def test_missing_backorder_is_skipped(db_session, make_po, make_backorder):
    live = make_backorder(qty=5, remaining_qty=5)
    po = make_po(lines=[{"qty_ordered": 10, "backorder_request_ids": ["ghost", live.id]}])

    po = _receive(db_session, po, 5)
    assert po.lines[0].qty_received == 5
    assert db_session.get(BackorderRequest, live.id).status == BackorderStatus.fulfilled


def test_cascade_ignores_backorder_status(db_session, make_po, make_backorder):
    """
    GIVEN
    - un backorder `ignored` (qty=5, remaining=5) lié à la ligne

    THEN
    - +5 => le cascade s'applique quand même : remaining=0, fulfilled
    """
    bo = make_backorder(qty=5, remaining_qty=5, status=BackorderStatus.ignored)
    po = make_po(lines=[{"qty_ordered": 10, "backorder_request_ids": [bo.id]}])

    _receive(db_session, po, 5)

    bo = db_session.get(BackorderRequest, bo.id)
    assert bo.remaining_qty == 0
    assert bo.fulfilled_qty == 5
    assert bo.status == BackorderStatus.fulfilled


def test_cascade_failure_on_one_backorder_keeps_siblings(db_session, make_po, make_backorder, monkeypatch):
    broken = make_backorder(qty=5, remaining_qty=5)
    live = make_backorder(qty=5, remaining_qty=5)
    broken_id, live_id = broken.id, live.id
    po = make_po(lines=[{"qty_ordered": 10, "backorder_request_ids": [broken_id, live_id]}])
    original = BackorderCascade._apply_one

    def flaky_apply_one(self, tenant_id, backorder_id, delta):
        if backorder_id == broken_id:
            raise SQLAlchemyError("row locked")
        return original(self, tenant_id, backorder_id, delta)

    monkeypatch.setattr(BackorderCascade, "_apply_one", flaky_apply_one)

    po = _receive(db_session, po, 5)
    assert po.lines[0].qty_received == 5
    assert po.status == POStatus.partially_received

    assert db_session.get(BackorderRequest, live_id).status == BackorderStatus.fulfilled
    bo = db_session.get(BackorderRequest, broken_id)
    assert bo.status == BackorderStatus.open
    assert bo.remaining_qty == 5


def test_cascade_reports_failed_outcome(db_session, make_backorder, monkeypatch):
    bo = make_backorder(qty=5, remaining_qty=5)

    def broken(self, tenant_id, backorder_id, delta):
        raise SQLAlchemyError("row locked")

    monkeypatch.setattr(BackorderCascade, "_apply_one", broken)
    results = BackorderCascade(db_session).apply(TENANT, [bo.id], 2)
    assert [(r.backorder_id, r.outcome, r.ok) for r in results] == [(bo.id, "failed", False)]


# ---------- Best-effort ----------
def test_events_emitted_root_and_per_line(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 10}, {"qty_ordered": 10}])
    notifier = RecordingNotifier()
    ReceivingWorkflow(db_session, notifier=notifier).receive(
        TENANT,
        po.id,
        [ReceiveLine(po.lines[0].id, 1), ReceiveLine(po.lines[1].id, 2)],
    )
    names = [e.name for e in notifier.events]
    assert names == ["po.received", "po.line.received", "po.line.received"]
    assert notifier.events[0].payload["status"] == "partially-received"
    assert [e.payload["deltaQty"] for e in notifier.events[1:]] == [1, 2]


def test_event_failure_never_rolls_back(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 10}])
    po = _receive(db_session, po, 4, key="K", notifier=FailingNotifier())
    assert po.lines[0].qty_received == 4
    assert _movement_count(db_session) == 1

    # clé marquée malgré l'échec de notification
    _receive(db_session, po, 4, key="K")
    assert _movement_count(db_session) == 1


def test_ledger_append_failure_does_not_abort_sibling_lines(db_session, make_po, monkeypatch):
    po = make_po(lines=[{"qty_ordered": 10}, {"qty_ordered": 10}])
    l1, l2 = po.lines[0].id, po.lines[1].id
    original = MovementLedger.append

    def flaky_append(self, movement):
        if movement.line_ref == l1:
            return AppendResult(ok=False, movement_id="x", error="boom")
        return original(self, movement)

    monkeypatch.setattr(MovementLedger, "append", flaky_append)

    po = ReceivingWorkflow(db_session).receive(
        TENANT, po.id, [ReceiveLine(l1, 1), ReceiveLine(l2, 2)]
    )
    assert po.status == POStatus.partially_received
    assert [l.qty_received for l in po.lines] == [1, 2]
    rows = db_session.execute(select(InventoryMovement)).scalars().all()
    assert [m.line_ref for m in rows] == [l2]


# ---------- Échecs bloquants ----------
def _marker_count(db):
    return db.execute(select(func.count()).select_from(IdempotencyRecord)).scalar_one()


def test_order_save_failure_aborts_without_marker(db_session, make_po, monkeypatch):
    """
    GIVEN
    - la persistance du PO échoue

    THEN
    - 500 PO_SAVE_FAILED, effets annulés, aucun marqueur d'idempotence
    """
    po = make_po(lines=[{"qty_ordered": 10}])
    po_id = po.id

    def broken_save(self, po, *, status, received_by_line):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(PurchaseOrderStore, "save", broken_save)

    with pytest.raises(InternalError) as exc:
        _receive(db_session, po, 4, key="K")
    assert exc.value.code == "PO_SAVE_FAILED"
    assert exc.value.http_status == 500

    assert _marker_count(db_session) == 0
    assert _movement_count(db_session) == 0
    assert db_session.get(PurchaseOrder, po_id).lines[0].qty_received == 0


def test_mark_failure_keeps_committed_effects(db_session, make_po, monkeypatch):
    """
    Fenêtre at-least-once connue : effets commités, marqueurs absents.
    """
    po = make_po(lines=[{"qty_ordered": 10}])
    po_id = po.id

    def broken_mark(self, tenant_id, ref_id, *, signature, key=None):
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(IdempotencyGuard, "mark_applied", broken_mark)

    with pytest.raises(InternalError) as exc:
        _receive(db_session, po, 4, key="K")
    assert exc.value.code == "IDEMPOTENCY_MARK_FAILED"

    assert _marker_count(db_session) == 0
    assert _movement_count(db_session) == 1
    po = db_session.get(PurchaseOrder, po_id)
    assert po.lines[0].qty_received == 4
    assert po.status == POStatus.partially_received


def test_oversized_key_rejected_before_any_effect(db_session, make_po):
    po = make_po(lines=[{"qty_ordered": 10}])

    with pytest.raises(InvalidInputError) as exc:
        _receive(db_session, po, 4, key="K" * (IDEMPOTENCY_KEY_MAX_LENGTH + 1))
    assert exc.value.code == "IDEMPOTENCY_KEY_TOO_LONG"
    assert _movement_count(db_session) == 0
    assert _marker_count(db_session) == 0

    # la limite elle-même est acceptée
    po = _receive(db_session, po, 4, key="K" * IDEMPOTENCY_KEY_MAX_LENGTH)
    assert po.lines[0].qty_received == 4


# ---------- Transitions backorder ----------
def test_ignore_emits_event_with_before_and_after(db_session, make_backorder):
    bo = make_backorder()
    notifier = RecordingNotifier()

    bo = transition_backorder(db_session, TENANT, bo.id, BackorderStatus.ignored, notifier=notifier)
    assert bo.status == BackorderStatus.ignored

    assert [e.name for e in notifier.events] == ["backorder.ignored"]
    assert notifier.events[0].tenant_id == TENANT
    assert notifier.events[0].payload == {"backorderId": bo.id, "before": "open", "after": "ignored"}


def test_convert_survives_notifier_failure(db_session, make_backorder):
    bo = make_backorder()
    bo_id = bo.id

    transition_backorder(db_session, TENANT, bo_id, BackorderStatus.converted, notifier=FailingNotifier())

    db_session.expire_all()
    assert db_session.get(BackorderRequest, bo_id).status == BackorderStatus.converted
