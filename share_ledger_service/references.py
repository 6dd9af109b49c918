import time
import uuid
from typing import Callable

from share_ledger_service.domain import ShareClass

PREFIXES = {
    ShareClass.REGULAR: "TXN",
    ShareClass.CO_FOUNDER: "CFD",
}

MAX_ATTEMPTS = 5


def new_reference(share_class: ShareClass) -> str:
    """<prefix>-<8 hex>-<last 6 digits of epoch millis>"""
    token = uuid.uuid4().hex[:8].upper()
    suffix = str(int(time.time() * 1000))[-6:]
    return f"{PREFIXES[share_class]}-{token}-{suffix}"


def allocate_reference(share_class: ShareClass, taken: Callable[[str], bool]) -> str:
    for _ in range(MAX_ATTEMPTS):
        reference = new_reference(share_class)
        if not taken(reference):
            return reference
    raise RuntimeError("Could not allocate a unique payment reference")
