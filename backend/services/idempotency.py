from __future__ import annotations

import hashlib
import json
import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import IdempotencyRecord
from backend.app.db.models.core_types import IdempotencyKind

logger = logging.getLogger(__name__)

# Taille de la colonne idempotency_records.value
IDEMPOTENCY_KEY_MAX_LENGTH = 255


def canonical_signature(entries: Iterable[tuple[str, int, str | None, str | None]]) -> str:
    """
    Signature de contenu d'une requête de réception.

    Entrées (line_ref, delta_qty, lot, location_id), triées de façon
    déterministe : même effet => même signature, quel que soit l'ordre des
    lignes ou la clé d'idempotence fournie.
    """
    canon = sorted(
        [str(ref), int(delta), lot or "", loc or ""]
        for ref, delta, lot, loc in entries
    )
    raw = json.dumps(canon, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class IdempotencyGuard:
    """
    Garde at-most-once durable, deux axes par (tenant, scope, ref_id) :

    - explicit-key      : clé fournie par le client, vérifiée AVANT validation
    - content-signature : hash du contenu, vérifié APRÈS validation

    Les marqueurs ne sont écrits qu'une fois tous les effets committés.
    """

    def __init__(self, db: Session, *, scope: str) -> None:
        self.db = db
        self.scope = scope

    def _exists(self, tenant_id: str, ref_id: str, kind: IdempotencyKind, value: str) -> bool:
        row = self.db.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.tenant_id == tenant_id)
            .where(IdempotencyRecord.scope == self.scope)
            .where(IdempotencyRecord.ref_id == ref_id)
            .where(IdempotencyRecord.kind == kind)
            .where(IdempotencyRecord.value == value)
        ).scalar_one_or_none()
        return row is not None

    def check_key(self, tenant_id: str, ref_id: str, key: str | None) -> bool:
        if not key:
            return False
        return self._exists(tenant_id, ref_id, IdempotencyKind.explicit_key, key)

    def check_signature(self, tenant_id: str, ref_id: str, signature: str) -> bool:
        return self._exists(tenant_id, ref_id, IdempotencyKind.content_signature, signature)

    def _mark(self, tenant_id: str, ref_id: str, kind: IdempotencyKind, value: str) -> None:
        try:
            with self.db.begin_nested():
                self.db.add(
                    IdempotencyRecord(
                        tenant_id=tenant_id,
                        scope=self.scope,
                        ref_id=ref_id,
                        kind=kind,
                        value=value,
                    )
                )
        except IntegrityError:
            # Déjà marqué (requête concurrente) : même état final
            logger.info("idempotency.mark duplicate scope=%s ref=%s kind=%s", self.scope, ref_id, kind.value)

    def mark_applied(self, tenant_id: str, ref_id: str, *, signature: str, key: str | None = None) -> None:
        self._mark(tenant_id, ref_id, IdempotencyKind.content_signature, signature)
        if key:
            self._mark(tenant_id, ref_id, IdempotencyKind.explicit_key, key)
