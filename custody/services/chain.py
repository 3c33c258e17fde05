import base64
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from custody.core.config import get_settings


logger = logging.getLogger(__name__)

BANK_SEND_TYPE = "/cosmos.bank.v1beta1.MsgSend"
TRANSFER_EVENT_TYPE = "transfer"
COIN_PATTERN = re.compile(r"(\d+)([a-zA-Z][a-zA-Z0-9/:._-]*)")
MAX_SEARCH_PAGES = 20


class ChainGatewayError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, raw: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.raw = raw


class SigningUnavailable(ChainGatewayError):
    pass


class BroadcastTimeout(ChainGatewayError):
    """The broadcast left this process but no answer came back.

    The transfer may or may not land on chain; callers must not refund.
    """


@dataclass(frozen=True)
class Coin:
    denom: str
    amount: int


@dataclass(frozen=True)
class TransferMessage:
    type_url: str
    from_address: str
    to_address: str
    coins: list[Coin] = field(default_factory=list)


@dataclass(frozen=True)
class ChainTransfer:
    tx_id: str
    height: int
    status: int
    messages: list[TransferMessage] = field(default_factory=list)
    raw_bytes: bytes = b""
    memo: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 0

    def received_units(self, address: str, denom: str) -> int:
        total = 0
        for message in self.messages:
            if message.to_address != address:
                continue
            for coin in message.coins:
                if coin.denom == denom:
                    total += coin.amount
        return total

    def sender_for(self, address: str) -> str:
        for message in self.messages:
            if message.to_address == address and message.from_address:
                return message.from_address
        return ""


@dataclass(frozen=True)
class SignedTransfer:
    """Broadcast-ready bytes and the hash the chain will index them under."""

    tx_id: str
    tx_bytes: bytes


@dataclass(frozen=True)
class BroadcastResult:
    tx_id: str
    status: int
    raw_log: str = ""

    @property
    def accepted(self) -> bool:
        return self.status == 0


class ChainGateway(Protocol):
    def search_transfers(self, to_address: str, since_height: int) -> list[ChainTransfer]: ...

    def get_transfer_by_hash(self, tx_id: str) -> ChainTransfer | None: ...

    def get_balance(self, address: str) -> int: ...

    def prepare_transfer(self, to_address: str, amount_units: int, memo: str | None = None) -> SignedTransfer: ...

    def broadcast_prepared(self, signed: SignedTransfer) -> BroadcastResult: ...

    def broadcast_transfer(self, to_address: str, amount_units: int, memo: str | None = None) -> BroadcastResult: ...


class TransactionSigner(Protocol):
    """Produces broadcast-ready transaction bytes signed with the custodial key."""

    def sign_transfer(
        self,
        *,
        from_address: str,
        to_address: str,
        amount_units: int,
        denom: str,
        memo: str | None = None,
    ) -> bytes: ...


def parse_coins(value: str | None) -> list[Coin]:
    coins = []
    for part in str(value or "").split(","):
        match = COIN_PATTERN.fullmatch(part.strip())
        if match:
            coins.append(Coin(denom=match.group(2), amount=int(match.group(1))))
    return coins


def _read_varint(buf: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(buf) or shift > 63:
            raise ValueError("truncated varint")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


def _proto_fields(buf: bytes):
    pos = 0
    while pos < len(buf):
        key, pos = _read_varint(buf, pos)
        number, wire_type = key >> 3, key & 0x07
        if wire_type == 0:
            value, pos = _read_varint(buf, pos)
        elif wire_type == 2:
            length, pos = _read_varint(buf, pos)
            if pos + length > len(buf):
                raise ValueError("truncated field")
            value = buf[pos : pos + length]
            pos += length
        elif wire_type == 1:
            value, pos = buf[pos : pos + 8], pos + 8
        elif wire_type == 5:
            value, pos = buf[pos : pos + 4], pos + 4
        else:
            raise ValueError(f"unsupported wire type {wire_type}")
        yield number, wire_type, value


def decode_memo(raw_bytes: bytes) -> str | None:
    """Read TxBody.memo out of an encoded TxRaw. None when the bytes don't parse."""
    if not raw_bytes:
        return None
    try:
        body = next((value for number, wire, value in _proto_fields(raw_bytes) if number == 1 and wire == 2), None)
        if body is None:
            return None
        for number, wire, value in _proto_fields(body):
            if number == 2 and wire == 2:
                return value.decode("utf-8")
        return ""
    except (ValueError, UnicodeDecodeError):
        return None


def _maybe_b64(value) -> str:
    text = "" if value is None else str(value)
    try:
        decoded = base64.b64decode(text, validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return text
    return decoded if decoded.isprintable() else text


def _event_attributes(event: dict) -> dict:
    attributes = {}
    raw_attributes = event.get("attributes") or []
    plain = any(item.get("key") in ("recipient", "sender", "amount") for item in raw_attributes if isinstance(item, dict))
    for item in raw_attributes:
        if not isinstance(item, dict):
            continue
        # Older Tendermint releases base64-encode event keys and values.
        key = item.get("key") if plain else _maybe_b64(item.get("key"))
        value = item.get("value") if plain else _maybe_b64(item.get("value"))
        if key and key not in attributes:
            attributes[key] = value or ""
    return attributes


def parse_rpc_transaction(payload: dict) -> ChainTransfer:
    """Build a ChainTransfer from one Tendermint RPC ``/tx`` or ``/tx_search`` item."""
    tx_result = payload.get("tx_result") or {}
    try:
        raw_bytes = base64.b64decode(payload.get("tx") or "")
    except ValueError:
        raw_bytes = b""

    messages = []
    for event in tx_result.get("events") or []:
        if not isinstance(event, dict) or event.get("type") != TRANSFER_EVENT_TYPE:
            continue
        attributes = _event_attributes(event)
        recipient = attributes.get("recipient")
        if not recipient:
            continue
        messages.append(
            TransferMessage(
                type_url=TRANSFER_EVENT_TYPE,
                from_address=attributes.get("sender") or "",
                to_address=recipient,
                coins=parse_coins(attributes.get("amount")),
            )
        )

    return ChainTransfer(
        tx_id=str(payload.get("hash") or "").upper(),
        height=int(payload.get("height") or 0),
        status=int(tx_result.get("code") or 0),
        messages=messages,
        raw_bytes=raw_bytes,
        memo=decode_memo(raw_bytes),
    )


def _normalize_base_url(raw_url) -> str:
    return str(raw_url or "").strip().rstrip("/")


class RestChainGateway:
    """Chain client over a Tendermint RPC node and a Cosmos REST (LCD) node."""

    def __init__(self, signer: TransactionSigner | None = None, settings=None):
        settings = settings or get_settings()
        self.rpc_url = _normalize_base_url(settings.chain_rpc_url)
        self.rest_url = _normalize_base_url(settings.chain_rest_url)
        self.timeout = settings.chain_timeout_seconds
        self.retry_count = settings.chain_retry_count
        self.page_size = max(1, min(int(settings.deposit_page_size), 100))
        self.denom = settings.chain_denom
        self.custodial_address = settings.custodial_address
        self.signer = signer

    def _extract_error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                message = error.get("data") or error.get("message")
                if isinstance(message, str) and message.strip():
                    return message.strip()
            for key in ("message", "error", "detail"):
                value = data.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        text = (response.text or "").strip()
        return text[:300] if text else f"HTTP {response.status_code}"

    def _request(self, method: str, url: str, *, params: dict | None = None, payload: dict | None = None) -> dict:
        """Read-only request with retries on 5xx, 429 and network errors."""
        last_exc = None
        for attempt in range(self.retry_count + 1):
            start = time.time()
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.request(method, url, params=params, json=payload)
                duration_ms = round((time.time() - start) * 1000, 2)
                logger.info("Chain API %s %s status=%s duration=%sms", method, url, response.status_code, duration_ms)
                if response.status_code >= 400:
                    raise ChainGatewayError(
                        self._extract_error_message(response), status_code=response.status_code, raw=response.text
                    )
                try:
                    return response.json()
                except ValueError as exc:
                    raise ChainGatewayError(
                        "Chain node returned invalid JSON response.", status_code=response.status_code, raw=response.text
                    ) from exc
            except ChainGatewayError as exc:
                last_exc = exc
                if exc.status_code is not None and exc.status_code < 500 and exc.status_code != 429:
                    raise
                if attempt < self.retry_count:
                    time.sleep(0.5 * (attempt + 1))
                    continue
                raise
            except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
                last_exc = ChainGatewayError("Unable to reach chain node.", raw=str(exc))
                if attempt < self.retry_count:
                    time.sleep(0.5 * (attempt + 1))
                    continue
                raise last_exc from exc
        raise last_exc

    def search_transfers(self, to_address: str, since_height: int) -> list[ChainTransfer]:
        query = f"transfer.recipient='{to_address}' AND tx.height>{int(since_height)}"
        transfers: list[ChainTransfer] = []
        page = 1
        complete = False
        while page <= MAX_SEARCH_PAGES:
            data = self._request(
                "GET",
                f"{self.rpc_url}/tx_search",
                params={
                    "query": f'"{query}"',
                    "order_by": '"asc"',
                    "page": str(page),
                    "per_page": str(self.page_size),
                },
            )
            result = data.get("result") or {}
            items = result.get("txs") or []
            transfers.extend(parse_rpc_transaction(item) for item in items if isinstance(item, dict))
            total = int(result.get("total_count") or 0)
            if not items or page * self.page_size >= total:
                complete = True
                break
            page += 1
        if complete or not transfers:
            return transfers

        # The page cap cut the result short. Callers advance their watermark to
        # the highest height returned, so drop that height: it may be partial.
        last_height = max(transfer.height for transfer in transfers)
        whole = [transfer for transfer in transfers if transfer.height < last_height]
        if not whole:
            logger.error(
                "Transfer search truncated inside a single block height=%s returned=%s; raise DEPOSIT_PAGE_SIZE",
                last_height,
                len(transfers),
            )
            return transfers
        logger.warning(
            "Transfer search truncated after %s pages; deferring height %s to the next poll",
            MAX_SEARCH_PAGES,
            last_height,
        )
        return whole

    def get_transfer_by_hash(self, tx_id: str) -> ChainTransfer | None:
        tx_hash = str(tx_id or "").strip()
        if not tx_hash:
            return None
        if not tx_hash.lower().startswith("0x"):
            tx_hash = f"0x{tx_hash}"
        try:
            data = self._request("GET", f"{self.rpc_url}/tx", params={"hash": tx_hash, "prove": "false"})
        except ChainGatewayError as exc:
            # Unknown hashes come back as a JSON-RPC error on HTTP 200 or 500.
            if "not found" in (exc.message or "").lower():
                return None
            raise
        if data.get("error"):
            message = str((data["error"] or {}).get("data") or (data["error"] or {}).get("message") or "")
            if "not found" in message.lower():
                return None
            raise ChainGatewayError(message or "Chain node returned an error.", raw=str(data["error"]))
        result = data.get("result")
        if not result:
            return None
        return parse_rpc_transaction(result)

    def get_balance(self, address: str) -> int:
        data = self._request("GET", f"{self.rest_url}/cosmos/bank/v1beta1/balances/{address}")
        for coin in data.get("balances") or []:
            if isinstance(coin, dict) and coin.get("denom") == self.denom:
                try:
                    return int(coin.get("amount") or 0)
                except (TypeError, ValueError) as exc:
                    raise ChainGatewayError(f"Unparseable balance amount: {coin.get('amount')!r}") from exc
        return 0

    def prepare_transfer(self, to_address: str, amount_units: int, memo: str | None = None) -> SignedTransfer:
        if self.signer is None:
            raise SigningUnavailable("No transaction signer configured for the custodial wallet.")
        tx_bytes = self.signer.sign_transfer(
            from_address=self.custodial_address,
            to_address=to_address,
            amount_units=int(amount_units),
            denom=self.denom,
            memo=memo,
        )
        return SignedTransfer(tx_id=hashlib.sha256(tx_bytes).hexdigest().upper(), tx_bytes=tx_bytes)

    def broadcast_transfer(self, to_address: str, amount_units: int, memo: str | None = None) -> BroadcastResult:
        return self.broadcast_prepared(self.prepare_transfer(to_address, amount_units, memo))

    def broadcast_prepared(self, signed: SignedTransfer) -> BroadcastResult:
        payload = {"tx_bytes": base64.b64encode(signed.tx_bytes).decode("ascii"), "mode": "BROADCAST_MODE_SYNC"}
        url = f"{self.rest_url}/cosmos/tx/v1beta1/txs"

        # Single attempt: a retried broadcast can move funds twice.
        start = time.time()
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=payload)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
            raise ChainGatewayError("Unable to reach chain node for broadcast.", raw=str(exc)) from exc
        except (httpx.TimeoutException, httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError) as exc:
            raise BroadcastTimeout("Broadcast sent but no response from chain node.", raw=str(exc)) from exc

        duration_ms = round((time.time() - start) * 1000, 2)
        logger.info("Chain broadcast status=%s duration=%sms", response.status_code, duration_ms)
        if response.status_code >= 400:
            raise ChainGatewayError(
                self._extract_error_message(response), status_code=response.status_code, raw=response.text
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ChainGatewayError(
                "Chain node returned invalid JSON response.", status_code=response.status_code, raw=response.text
            ) from exc

        tx_response = data.get("tx_response") or {}
        return BroadcastResult(
            tx_id=str(tx_response.get("txhash") or signed.tx_id).upper(),
            status=int(tx_response.get("code") or 0),
            raw_log=str(tx_response.get("raw_log") or ""),
        )
