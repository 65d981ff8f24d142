# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import contextvars
import logging
from contextlib import contextmanager

entity_label = contextvars.ContextVar("entity_label", default=None)
worker_name = contextvars.ContextVar("worker_name", default=None)


def format_prefix() -> str:
    """
    Build a prefix like:
      - "[worker-2][category:<id>] " inside a reconciliation, else
      - "[worker-2] " or "" outside one.
    """
    parts = []
    w = worker_name.get()
    if w:
        parts.append(f"[{w}]")
    label = entity_label.get()
    if label:
        parts.append(f"[{label}]")
    return "".join(parts) + " " if parts else ""


@contextmanager
def entity_scope(kind: str, entity_id: str):
    token = entity_label.set(f"{kind}:{entity_id}")
    try:
        yield
    finally:
        entity_label.reset(token)


class ContextFilter(logging.Filter):
    """Prefixes every record with the current reconciliation context."""

    def filter(self, record: logging.LogRecord) -> bool:
        prefix = format_prefix()
        if prefix and not getattr(record, "_ctx_prefixed", False):
            record.msg = prefix + str(record.msg)
            record._ctx_prefixed = True
        return True
