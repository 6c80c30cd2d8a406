"""
Process-wide application settings (feature toggles, tax rate, ...).

Values live in ``app_settings`` as text plus a type tag. Readers go through
``SettingsService``, which keeps a pull-based cache with a short TTL: a toggle
flipped in the admin dashboard reaches kiosk requests within
``CAFE_SETTINGS_TTL_SECS`` seconds.
"""
from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import unit_of_work
from .errors import InvalidInput, NotFound, StoreUnavailable
from .models import AppSetting
from .retry import retry_transient


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


SETTINGS_TTL_SECS = float(_env_or("CAFE_SETTINGS_TTL_SECS", "5"))

TABLE_NUMBER_ENABLED = "table_number_enabled"
TAX_RATE_PCT = "tax_rate_pct"

DEFAULTS: dict[str, tuple[Any, str, str]] = {
    TABLE_NUMBER_ENABLED: (False, "boolean", "Dine-in orders must carry a table number"),
    TAX_RATE_PCT: (10, "number", "Tax rate applied to order subtotals, in percent"),
}

VALUE_TYPES = ("boolean", "number", "json", "string")
_KEY_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,100}$")
_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")

log = logging.getLogger("cafe.settings")

_MISSING = object()


def infer_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (dict, list)):
        return "json"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        if value.strip().lower() in ("true", "false"):
            return "boolean"
        try:
            float(value)
            return "number"
        except ValueError:
            return "string"
    return "string"


def encode(value: Any, value_type: str) -> str:
    if value_type not in VALUE_TYPES:
        raise InvalidInput(f"unknown setting type {value_type!r}")
    if value_type == "boolean":
        if isinstance(value, bool):
            return "true" if value else "false"
        raw = str(value).strip().lower()
        if raw in _TRUE:
            return "true"
        if raw in _FALSE:
            return "false"
        raise InvalidInput(f"{value!r} is not a boolean")
    if value_type == "number":
        if isinstance(value, bool):
            raise InvalidInput(f"{value!r} is not a number")
        try:
            num = float(value)
        except (TypeError, ValueError):
            raise InvalidInput(f"{value!r} is not a number")
        return str(int(num)) if num.is_integer() else str(num)
    if value_type == "json":
        return json.dumps(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def decode(raw: str, value_type: str) -> Any:
    if value_type == "boolean":
        return raw.strip().lower() in _TRUE
    if value_type == "number":
        num = float(raw)
        return int(num) if num.is_integer() else num
    if value_type == "json":
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("setting holds invalid json, returning raw text")
            return raw
    return raw


def as_dict(row: AppSetting) -> dict:
    return {
        "key": row.key,
        "value": decode(row.value, row.value_type),
        "type": row.value_type,
        "description": row.description,
        "updated_at": row.updated_at,
    }


def read_value(s: Session, key: str, default: Any = None) -> Any:
    """Uncached read through an existing session."""
    row = s.get(AppSetting, key)
    if row is None:
        return DEFAULTS[key][0] if key in DEFAULTS and default is None else default
    return decode(row.value, row.value_type)


def ensure_defaults(s: Session) -> int:
    added = 0
    for key, (value, value_type, description) in DEFAULTS.items():
        if s.get(AppSetting, key) is None:
            s.add(AppSetting(key=key, value=encode(value, value_type), value_type=value_type, description=description))
            added += 1
    s.flush()
    return added


class SettingsService:
    def __init__(self, session_factory: Callable[[], Session], ttl_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._session_factory = session_factory
        self.ttl_seconds = SETTINGS_TTL_SECS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._cache: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _load(self, key: str) -> Any:
        with self._session_factory() as s:
            row = s.get(AppSetting, key)
            if row is None:
                return _MISSING
            return decode(row.value, row.value_type)

    def get(self, key: str, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            hit = self._cache.get(key)
        if hit is not None and now - hit["ts"] < self.ttl_seconds:
            value = hit["data"]
        else:
            value = self._load(key)
            with self._lock:
                self._cache[key] = {"ts": now, "data": value}
        if value is not _MISSING:
            return value
        if default is None and key in DEFAULTS:
            return DEFAULTS[key][0]
        return default

    def get_bool(self, key: str, default: Optional[bool] = None) -> bool:
        value = self.get(key, default)
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE

    def get_number(self, key: str, default: Optional[float] = None) -> float:
        value = self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            log.warning("setting %s is not numeric, using 0", key)
            return 0.0

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._cache.clear()
            else:
                self._cache.pop(key, None)

    def get_public(self, key: str) -> dict:
        with self._session_factory() as s:
            row = s.get(AppSetting, key)
            if row is None:
                raise NotFound(f"setting {key} not found", key=key)
            return as_dict(row)

    def all(self) -> list[dict]:
        with self._session_factory() as s:
            rows = s.execute(select(AppSetting).order_by(AppSetting.key)).scalars().all()
            return [as_dict(r) for r in rows]

    @retry_transient
    def set(self, key: str, value: Any, value_type: Optional[str] = None,
            description: Optional[str] = None) -> dict:
        """
        Upsert a setting. Without `value_type` the stored type is kept (or the
        built-in default's type, or one inferred for a new key), so a value
        that does not fit a boolean/number toggle is rejected instead of
        silently retyping it. Built-in keys never change type.
        """
        if not _KEY_RE.match(key or ""):
            raise InvalidInput("setting key must be 1-100 chars of letters, digits, _ . -")
        if value is None:
            raise InvalidInput("setting value is required")
        if key in DEFAULTS:
            fixed = DEFAULTS[key][1]
            if value_type is not None and value_type != fixed:
                raise InvalidInput(f"setting {key} is a {fixed}", key=key)
            value_type = fixed
        with self._session_factory() as s:
            try:
                out = self._upsert(s, key, value, value_type, description)
            except IntegrityError as e:
                raise StoreUnavailable(f"setting {key} was created concurrently") from e
        self.invalidate(key)
        log.info("setting %s updated", key, extra={"status": out["type"]})
        return out

    def _upsert(self, s: Session, key: str, value: Any, value_type: Optional[str],
                description: Optional[str]) -> dict:
        with unit_of_work(s):
            row = s.get(AppSetting, key)
            vtype = value_type or (row.value_type if row is not None else infer_type(value))
            raw = encode(value, vtype)
            if row is None:
                row = AppSetting(key=key, value=raw, value_type=vtype, description=description)
                s.add(row)
            else:
                row.value = raw
                row.value_type = vtype
                if description is not None:
                    row.description = description
            s.flush()
            out = as_dict(row)
        return out
