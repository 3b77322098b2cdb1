"""Partner registry: read-mostly, whole-record replacement, loaded from YAML."""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Iterable, Optional

import yaml
from pydantic import ValidationError

from persona_gate.config import expand_env_vars, expand_path
from persona_gate.models import PartnerConfig
from persona_gate.scopes import unknown_scopes

logger = logging.getLogger("persona_gate.partners")

MIN_SECRET_LENGTH = 32

_UNEXPANDED_RE = re.compile(r"\$\{\w+\}")


class PartnerRegistry:
    """In-memory partner configs.

    Writers build a new dict and swap the reference under a lock, so readers
    always see either the old record or the new one, never a mix.
    """

    def __init__(self, partners: Iterable[PartnerConfig] = ()) -> None:
        self._lock = threading.Lock()
        self._partners: dict[str, PartnerConfig] = {p.partner_id: p for p in partners}

    def get(self, partner_id: str) -> Optional[PartnerConfig]:
        return self._partners.get(partner_id)

    def __contains__(self, partner_id: object) -> bool:
        return partner_id in self._partners

    def __len__(self) -> int:
        return len(self._partners)

    def all(self) -> list[PartnerConfig]:
        return sorted(self._partners.values(), key=lambda p: p.partner_id)

    def upsert(self, partner: PartnerConfig) -> None:
        with self._lock:
            updated = dict(self._partners)
            updated[partner.partner_id] = partner
            self._partners = updated
        logger.info("partners: upserted %s (active=%s)", partner.partner_id, partner.active)

    def deactivate(self, partner_id: str) -> bool:
        """Mark a partner inactive. Future tokens are rejected; nothing else changes."""
        with self._lock:
            current = self._partners.get(partner_id)
            if current is None or not current.active:
                return False
            updated = dict(self._partners)
            updated[partner_id] = current.model_copy(update={"active": False})
            self._partners = updated
        logger.info("partners: deactivated %s", partner_id)
        return True

    def replace_all(self, partners: Iterable[PartnerConfig]) -> None:
        fresh = {p.partner_id: p for p in partners}
        with self._lock:
            self._partners = fresh
        logger.info("partners: loaded %d partner configs", len(fresh))

    @classmethod
    def from_file(cls, path: Path | str) -> "PartnerRegistry":
        return cls(load_partners(path))


def load_partners(path: Path | str) -> list[PartnerConfig]:
    """Read partner configs from YAML (`partners:` list). Missing file → empty list.

    Secrets should be given as ${ENV_VAR} references. Raises ValueError for
    unresolved references, short secrets, unknown scopes, duplicates, or
    invalid entries.
    """
    partners_path = expand_path(str(path))
    if not partners_path.exists():
        logger.warning("partners: %s not found, no partners registered", partners_path)
        return []

    with open(partners_path) as f:
        raw = yaml.safe_load(f) or {}
    entries = expand_env_vars(raw).get("partners") or []

    partners: list[PartnerConfig] = []
    seen: set[str] = set()
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"partners[{i}] must be a mapping")
        secret = entry.get("shared_secret")
        if isinstance(secret, str) and _UNEXPANDED_RE.search(secret):
            raise ValueError(f"partners[{i}].shared_secret references an unset environment variable")
        try:
            partner = PartnerConfig(**entry)
        except ValidationError as exc:
            # Never echo input values: they may contain the secret
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            raise ValueError(f"partners[{i}] is invalid: {', '.join(fields)}") from None
        if len(partner.secret_bytes()) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"partners[{i}] ({partner.partner_id}): shared_secret must be at least "
                f"{MIN_SECRET_LENGTH} bytes"
            )
        unknown = unknown_scopes(partner.granted_scopes)
        if unknown:
            raise ValueError(f"partners[{i}] ({partner.partner_id}): unknown scopes {', '.join(unknown)}")
        if partner.partner_id in seen:
            raise ValueError(f"duplicate partner_id {partner.partner_id!r}")
        seen.add(partner.partner_id)
        partners.append(partner)
    return partners
