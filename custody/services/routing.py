"""Recover the destination account id carried in a deposit's memo.

Wallets put the account id in the transaction memo. When the gateway can
decode the memo it is used as-is; otherwise the id is dug out of the raw
transaction bytes by ``extract_routing_token``.
"""
import re

PRINTABLE_RUN = re.compile(rb"[\x20-\x7e]+")
DIGITS = re.compile(r"[0-9]+")


def printable_runs(raw_bytes: bytes) -> list[str]:
    return [match.group().decode("ascii") for match in PRINTABLE_RUN.finditer(raw_bytes or b"")]


def _pick_token(runs: list[str], amount_text: str, min_digits: int, max_digits: int) -> str | None:
    for run in runs:
        token = run.strip()
        if not DIGITS.fullmatch(token):
            continue
        if not (min_digits <= len(token) <= max_digits):
            continue
        if token == amount_text:
            continue
        return token
    return None


def extract_routing_token(
    raw_bytes: bytes,
    anchor_amount: int,
    min_digits: int = 5,
    max_digits: int = 12,
) -> str | None:
    """Find the account id in an encoded transaction.

    The memo follows the transferred coin in the encoding, so the first run
    holding the base-unit amount anchors the search and the first later run
    that is all digits, inside the length window and not the amount itself
    is the token. With no anchor the whole buffer is searched.
    """
    runs = printable_runs(raw_bytes)
    if not runs:
        return None
    amount_text = str(int(anchor_amount))

    anchor = next((index for index, run in enumerate(runs) if amount_text in run), None)
    if anchor is not None:
        return _pick_token(runs[anchor + 1 :], amount_text, min_digits, max_digits)
    return _pick_token(runs, amount_text, min_digits, max_digits)


def parse_routing_token(token: str | None) -> int | None:
    if token is None:
        return None
    token = str(token).strip()
    if not DIGITS.fullmatch(token):
        return None
    value = int(token)
    return value if value > 0 else None
