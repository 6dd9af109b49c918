"""
On-chain USDT rail (BEP-20 on BNB Smart Chain).

The buyer transfers USDT to the company wallet and submits the transaction
hash with their sending wallet. Verification reads the receipt and the
containing block from a public JSON-RPC node and checks the single Transfer
log against the claim. Mismatches are rejected with escalation: the
transaction stays pending with a diagnostic for an administrator to decide.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

import requests

from common.circuit_breaker import CircuitBreaker, bsc_rpc_circuit_breaker
from common.settings import settings
from share_ledger_service.domain import (
    InitiationResult, Outcome, Rail, Rejected, Settled, StillPending, TransactionRecord, UserContext, utcnow,
)
from share_ledger_service.errors import InvalidInput, RailDisabled
from share_ledger_service.pricing import is_wallet_address
from share_ledger_service.rails.base import TRANSPORT_ERRORS, HttpRailAdapter

logger = logging.getLogger(__name__)

USDT_CONTRACT = "0x55d398326f99059fF775485246999027B3197955"
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
USDT_DECIMALS = 18

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class RPCError(Exception):
    """JSON-RPC call returned an error object."""
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")


class BscRpcClient:
    """Minimal Ethereum JSON-RPC client for a BSC node."""

    def __init__(self, url: str = None, timeout: float = None):
        self.url = url or settings.bsc_rpc_url
        self.timeout = timeout or settings.external_http_timeout_seconds
        self._id = 0

    def _call(self, method: str, params: list = None) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params or []}
        response = requests.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        result = response.json()
        if result.get("error"):
            raise RPCError(result["error"].get("code", -1), result["error"].get("message", "unknown"))
        return result.get("result")

    def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return self._call("eth_getTransactionReceipt", [tx_hash])

    def get_block(self, block_number: str) -> Optional[dict]:
        return self._call("eth_getBlockByNumber", [block_number, False])

    def fetch_claim_evidence(self, tx_hash: str) -> tuple:
        """Receipt plus its block header, or (None, None) while unmined."""
        receipt = self.get_transaction_receipt(tx_hash)
        if not receipt:
            return None, None
        return receipt, self.get_block(receipt["blockNumber"])


def topic_address(topic: str) -> str:
    """Low 20 bytes of a 32-byte indexed topic, as a lowercase 0x address."""
    return "0x" + topic[-40:].lower()


def decode_amount(data: str) -> Decimal:
    return Decimal(int(data, 16)) / (Decimal(10) ** USDT_DECIMALS)


def check_usdt_transfer(receipt: dict, block: Optional[dict], sender_wallet: str, company_wallet: str,
                        expected_amount: Decimal, tolerance: Decimal, max_age: timedelta,
                        now: Optional[datetime] = None) -> Outcome:
    """Apply every acceptance rule to a fetched receipt; the first failure wins."""
    def reject(reason: str, **details) -> Rejected:
        return Rejected(reason=reason, escalate=True, details=details)

    if int(str(receipt.get("status", "0x0")), 16) != 1:
        return reject("Transaction failed on-chain")

    if (receipt.get("to") or "").lower() != USDT_CONTRACT.lower():
        return reject("Transaction is not a USDT transfer", to=receipt.get("to"))

    transfers = [
        log for log in receipt.get("logs") or []
        if (log.get("address") or "").lower() == USDT_CONTRACT.lower()
        and len(log.get("topics") or []) == 3
        and log["topics"][0].lower() == TRANSFER_TOPIC
    ]
    if len(transfers) != 1:
        return reject(f"Expected exactly one USDT Transfer log, found {len(transfers)}")
    log = transfers[0]

    sender = topic_address(log["topics"][1])
    if sender != sender_wallet.lower():
        return reject("Transfer sender does not match the submitted wallet", sender=sender)

    recipient = topic_address(log["topics"][2])
    if recipient != company_wallet.lower():
        return reject("Transfer recipient is not the company wallet", recipient=recipient)

    try:
        amount = decode_amount(log.get("data") or "0x0")
    except ValueError:
        return reject("Malformed Transfer amount", data=log.get("data"))
    if abs(amount - expected_amount) > expected_amount * tolerance:
        return reject(f"Amount mismatch: received {amount} USDT, expected {expected_amount} USDT",
                      amount=str(amount), expected=str(expected_amount))

    if not block or block.get("timestamp") is None:
        return StillPending(reason="Block not yet available")
    mined_at = datetime.fromtimestamp(int(str(block["timestamp"]), 16), tz=timezone.utc).replace(tzinfo=None)
    now = now or utcnow()
    if now - mined_at > max_age:
        return reject("Transaction is older than the accepted window", mined_at=mined_at.isoformat())

    return Settled(amount=amount, timestamp=mined_at, details={"block": receipt.get("blockNumber")})


class BscUsdtRail(HttpRailAdapter):
    rail = Rail.ONCHAIN
    # the claim itself is the trigger; there is nothing to poll without a hash
    supports_remote_status = False

    def __init__(self, rpc: BscRpcClient = None, breaker: CircuitBreaker = bsc_rpc_circuit_breaker,
                 wallet_resolver: Callable[[], Optional[str]] = None, tolerance: float = None,
                 max_age_hours: int = None, clock: Callable[[], datetime] = utcnow):
        super().__init__(breaker, settings.external_http_timeout_seconds)
        self.rpc = rpc or BscRpcClient()
        self.wallet_resolver = wallet_resolver or (lambda: settings.company_wallet_address)
        self.tolerance = Decimal(str(tolerance if tolerance is not None else settings.onchain_amount_tolerance))
        self.max_age = timedelta(hours=max_age_hours or settings.onchain_max_age_hours)
        self.clock = clock

    def company_wallet(self) -> str:
        wallet = self.wallet_resolver()
        if not is_wallet_address(wallet):
            raise RailDisabled(self.rail.value)
        return wallet

    async def initiate(self, txn: TransactionRecord, user: UserContext, inputs: dict) -> InitiationResult:
        wallet = self.company_wallet()
        payload = {
            "company_wallet": wallet,
            "expected_amount": str(txn.total_amount),
            "token_contract": USDT_CONTRACT,
            "network": "BSC",
        }
        external_id = None
        tx_hash = inputs.get("tx_hash")
        if tx_hash:
            payload.update(normalize_claim(tx_hash, inputs.get("wallet_address")))
            external_id = payload["tx_hash"]
        return InitiationResult(
            payload=payload,
            external_id=external_id,
            client_data={"company_wallet": wallet, "expected_amount": txn.total_amount,
                         "token_contract": USDT_CONTRACT, "network": "BSC"},
        )

    async def verify(self, txn: TransactionRecord, proof: Optional[Any] = None) -> Outcome:
        tx_hash = txn.rail_payload.get("tx_hash")
        sender = txn.rail_payload.get("sender_wallet")
        if not tx_hash or not sender:
            return StillPending(reason="Awaiting transaction hash")

        try:
            receipt, block = await self._query(self.rpc.fetch_claim_evidence, tx_hash)
        except (RPCError, *TRANSPORT_ERRORS) as e:
            logger.warning(f"BSC lookup for {txn.reference} failed, leaving pending: {e!r}")
            return StillPending(reason="Blockchain node unavailable")
        if receipt is None:
            return StillPending(reason="Transaction not found or still pending")

        outcome = check_usdt_transfer(
            receipt, block,
            sender_wallet=sender,
            company_wallet=txn.rail_payload.get("company_wallet") or self.company_wallet(),
            expected_amount=txn.total_amount,
            tolerance=self.tolerance,
            max_age=self.max_age,
            now=self.clock(),
        )
        if isinstance(outcome, Rejected):
            logger.warning(f"On-chain verification failed for {txn.reference}: {outcome.reason}")
        return outcome


def normalize_claim(tx_hash: Optional[str], wallet_address: Optional[str]) -> dict:
    if not tx_hash or not TX_HASH_RE.match(tx_hash):
        raise InvalidInput("Invalid transaction hash format", field="txHash")
    if not is_wallet_address(wallet_address):
        raise InvalidInput("Invalid wallet address format", field="walletAddress")
    return {"tx_hash": tx_hash.lower(), "sender_wallet": wallet_address.lower()}
