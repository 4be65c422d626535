"""Test/live classification of payment-provider references.

Stripe identifiers created with test keys carry a ``<prefix>_test_`` shape
(``cs_test_...``, ``pi_test_...``, ``acct_test_...``). Everything else,
including empty or unrecognised references, is treated as live money so that
nothing real is ever hidden from reporting.
"""
import enum
import re

from ledger.config import payments_mode_override, stripe_secret_key

_TEST_REF = re.compile(r"^[A-Za-z]+_test_")


class Mode(str, enum.Enum):
    TEST = "test"
    LIVE = "live"


def classify(provider_ref) -> Mode:
    if not isinstance(provider_ref, str):
        return Mode.LIVE
    if _TEST_REF.match(provider_ref.strip()):
        return Mode.TEST
    return Mode.LIVE


def current_mode() -> Mode:
    override = payments_mode_override()
    if override in (Mode.TEST.value, Mode.LIVE.value):
        return Mode(override)
    key = stripe_secret_key()
    if key.startswith("sk_live_") or key.startswith("rk_live_"):
        return Mode.LIVE
    # No key or a test key: the process talks to the sandbox.
    return Mode.TEST


def matches_current_mode(provider_ref, mode: Mode | None = None) -> bool:
    if not provider_ref:
        return False
    return classify(provider_ref) == (mode or current_mode())
