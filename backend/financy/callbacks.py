"""Encoding and decoding of inline-keyboard callback tokens."""

from __future__ import annotations

import re
from dataclasses import dataclass

MAX_CALLBACK_BYTES = 64

CONFIRM = "confirm"
EDIT = "edit"
CANCEL = "cancel"
CONFIRM_BATCH = "confirm_batch"
REVIEW_BATCH = "review_batch"
CANCEL_BATCH = "cancel_batch"

# Longest prefixes first so "confirm_batch_" is never read as "confirm_".
_ACTION_PREFIXES = (
    (CONFIRM_BATCH, "confirm_batch_"),
    (REVIEW_BATCH, "review_batch_"),
    (CANCEL_BATCH, "cancel_batch_"),
    (CONFIRM, "confirm_"),
    (EDIT, "edit_"),
    (CANCEL, "cancel_"),
)

SETUP_PREFIX = "setup_"
SETUP_NAME_DEFAULT = "setup_name_default"

_SETUP_PATTERNS = (
    ("type", re.compile(r"setup_type_([a-z_]+)")),
    ("confirm", re.compile(r"setup_confirm_([a-z_]+)")),
    ("perms", re.compile(r"setup_perms_(everyone|admins)")),
    ("currency", re.compile(r"setup_currency_([A-Z]{3})")),
    ("back", re.compile(r"setup_back_(type|name|perms)")),
    ("name", re.compile(r"setup_name_(default)")),
)

_TOKEN_ID = re.compile(r"[0-9a-f]+")


@dataclass(frozen=True)
class TransactionCallback:
    action: str
    token: str

    @property
    def is_batch(self) -> bool:
        return self.action in (CONFIRM_BATCH, REVIEW_BATCH, CANCEL_BATCH)


@dataclass(frozen=True)
class SetupCallback:
    action: str
    value: str


def build(action: str, token: str) -> str:
    prefix = dict(_ACTION_PREFIXES).get(action)
    if prefix is None:
        raise ValueError(f"Unknown callback action {action!r}")
    return guard(f"{prefix}{token}")


def guard(data: str) -> str:
    if len(data.encode("utf-8")) > MAX_CALLBACK_BYTES:
        raise ValueError(f"Callback data exceeds {MAX_CALLBACK_BYTES} bytes: {data!r}")
    return data


def parse_transaction_callback(data: str) -> TransactionCallback | None:
    for action, prefix in _ACTION_PREFIXES:
        if data.startswith(prefix):
            token = data[len(prefix) :]
            if _TOKEN_ID.fullmatch(token):
                return TransactionCallback(action, token)
            return None
    return None


def parse_setup_callback(data: str) -> SetupCallback | None:
    if not data.startswith(SETUP_PREFIX):
        return None
    for action, pattern in _SETUP_PATTERNS:
        match = pattern.fullmatch(data)
        if match:
            return SetupCallback(action, match.group(1))
    return None
