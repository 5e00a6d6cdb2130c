"""
CAS-guarded read-modify-write shared by every mutable document type.

Every state transition in ``models.operations`` goes through ``cas_retry``
with a mutator that refuses the write when the guard no longer holds.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from couchbase.exceptions import CASMismatchException

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")


@dataclass
class CasResult(Generic[ItemT]):
    """Outcome of a CAS read-modify-write.

    ``item`` is the last document read, whether or not the write happened, so
    a caller that got ``ok=False`` can still inspect the state that refused it.
    """

    ok: bool
    error: Optional[str] = None
    item: Optional[ItemT] = None
    not_found: bool = False


async def cas_retry(
    model: Any,
    doc_id: str,
    mutator: Callable[[Any], Optional[str]],
    max_retries: int = 5,
) -> CasResult:
    """Read-modify-write *doc_id* of *model* with CAS-guarded retry.

    *mutator* receives the document's data model and mutates it in place. It
    returns ``None`` to write or an error string to abort without writing. On
    ``CASMismatchException`` the helper re-reads, re-runs the mutator and
    retries with exponential backoff (10 ms, 20 ms, 40 ms, ...).
    """
    backoff_ms = 10
    item = None
    for attempt in range(max_retries + 1):
        item = await model.get(doc_id)
        if not item:
            return CasResult(ok=False, error=f"{model.__name__} {doc_id} not found", not_found=True)

        error = mutator(item.data)
        if error is not None:
            return CasResult(ok=False, error=error, item=item)

        try:
            await model.update(item)
            return CasResult(ok=True, item=item)
        except CASMismatchException:
            if attempt == max_retries:
                logger.warning(f"CAS retries exhausted for {model.__name__} {doc_id}")
                return CasResult(ok=False, error="Concurrent update conflict, please retry", item=item)
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    return CasResult(ok=False, error="Max retries exceeded", item=item)
