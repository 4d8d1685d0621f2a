"""Async Solana JSON-RPC client used for every treasury transaction.

Transactions are built and signed locally with `solders`, so the signature is
known before the first send. That is what makes resubmission safe: after an
ambiguous failure the client asks the cluster about that signature before it
signs a new transaction.
"""

import asyncio
import base64
from typing import Any

import httpx
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from heliumtools.common.logging import logger
from heliumtools.common.metrics import retries_total


LANDED_STATUSES = ("confirmed", "finalized")


class ChainError(Exception):
    """Base class for chain client failures."""


class SolanaRPCError(ChainError):
    """JSON-RPC error object returned by the node."""

    def __init__(self, message: str, error_data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.error_data = error_data or {}

    @property
    def code(self) -> int | None:
        return self.error_data.get("code")

    def is_account_not_found(self) -> bool:
        message = str(self).lower()
        return (
            "could not find account" in message
            or "account not found" in message
            or "invalid param" in message
            or (self.code == -32602 and "account" in message)
        )

    def is_blockhash_expired(self) -> bool:
        message = str(self).lower()
        return "blockhash not found" in message or "block height exceeded" in message


class TransactionFailed(ChainError):
    """The transaction landed but the program returned an error."""

    def __init__(self, signature: str, err: Any) -> None:
        super().__init__(f"Transaction failed: {err}")
        self.signature = signature
        self.err = err


class ConfirmationTimeout(ChainError):
    def __init__(self, signature: str, timeout_seconds: float) -> None:
        super().__init__(f"Transaction confirmation timeout after {timeout_seconds}s: {signature}")
        self.signature = signature


class SubmissionFailed(ChainError):
    def __init__(self, attempts: int, last_error: Exception | None) -> None:
        super().__init__(f"Transaction failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class SolanaClient:
    """JSON-RPC 2.0 client plus submit/confirm helpers for the treasury."""

    def __init__(
        self,
        rpc_url: str,
        commitment: str = "confirmed",
        http: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        confirm_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        service_name: str = "dc-purchase",
    ) -> None:
        self.rpc_url = rpc_url
        self.commitment = commitment
        self._client = http or httpx.AsyncClient(timeout=30.0)
        self.max_attempts = max_attempts
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.service_name = service_name
        self._request_id = 0

    async def _rpc(self, method: str, params: list[Any] | None = None) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}
        resp = await self._client.post(self.rpc_url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if "error" in data:
            error = data["error"] or {}
            raise SolanaRPCError(error.get("message", "Unknown RPC error"), error)
        return data.get("result")

    async def get_latest_blockhash(self) -> Hash:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def send_transaction(self, raw: bytes) -> str:
        """Send a signed, serialized transaction; returns its signature."""

        signature = await self._rpc(
            "sendTransaction",
            [
                base64.b64encode(raw).decode("ascii"),
                {"encoding": "base64", "skipPreflight": False, "preflightCommitment": self.commitment},
            ],
        )
        logger.info("solana_tx_sent signature=%s", signature)
        return signature

    async def get_signature_status(self, signature: str) -> dict | None:
        result = await self._rpc("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        statuses = (result or {}).get("value") or []
        return statuses[0] if statuses else None

    async def transaction_landed(self, signature: str) -> bool:
        """True when `signature` is confirmed or finalized without an error."""

        status = await self.get_signature_status(signature)
        if status is None or status.get("err"):
            return False
        return status.get("confirmationStatus") in LANDED_STATUSES

    async def get_token_balance(self, account: Pubkey | str) -> int:
        """Token account balance in base units; 0 when the account does not exist yet."""

        try:
            result = await self._rpc("getTokenAccountBalance", [str(account), {"commitment": self.commitment}])
        except SolanaRPCError as exc:
            if exc.is_account_not_found():
                return 0
            raise
        value = (result or {}).get("value")
        if not value:
            return 0
        return int(value["amount"])

    async def wait_for_confirmation(self, signature: str, timeout_seconds: float | None = None) -> None:
        """Poll until confirmed/finalized; raise on timeout or on-chain error."""

        timeout = self.confirm_timeout_seconds if timeout_seconds is None else timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status = await self.get_signature_status(signature)
            if status is not None:
                if status.get("err"):
                    raise TransactionFailed(signature, status["err"])
                if status.get("confirmationStatus") in LANDED_STATUSES:
                    return
            if loop.time() >= deadline:
                raise ConfirmationTimeout(signature, timeout)
            await asyncio.sleep(self.poll_interval_seconds)

    async def landed_after_error(self, signature: str) -> bool:
        """Signature lookup used after an ambiguous failure; lookup errors count as not landed."""

        try:
            return await self.transaction_landed(signature)
        except (httpx.HTTPError, SolanaRPCError) as exc:
            logger.warning("signature_lookup_failed signature=%s error=%s", signature, exc)
            return False

    async def submit_and_confirm(self, instructions: list[Instruction], signers: list[Keypair]) -> str:
        """Sign with a fresh blockhash, send, and confirm with bounded retries.

        The first signer pays fees. Blockhash expiry, confirmation timeouts and
        transport errors are retried; before each retry the previous signature is
        looked up so a transaction that landed anyway is returned instead of being
        sent twice. Program errors and other RPC rejections propagate at once.
        """

        payer = signers[0].pubkey()
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            signature = None
            try:
                blockhash = await self.get_latest_blockhash()
                message = Message.new_with_blockhash(instructions, payer, blockhash)
                tx = Transaction(signers, message, blockhash)
                signature = str(tx.signatures[0])
                await self.send_transaction(bytes(tx))
                await self.wait_for_confirmation(signature)
                return signature
            except SolanaRPCError as exc:
                if not exc.is_blockhash_expired():
                    raise
                last_error = exc
            except (ConfirmationTimeout, httpx.TransportError) as exc:
                last_error = exc

            logger.warning(
                "solana_submit_retry attempt=%s/%s signature=%s error=%s",
                attempt,
                self.max_attempts,
                signature,
                last_error,
            )
            if signature is not None and await self.landed_after_error(signature):
                logger.info("solana_tx_landed_despite_error signature=%s", signature)
                return signature
            retries_total.labels(service=self.service_name, dependency="solana").inc()

        raise SubmissionFailed(self.max_attempts, last_error)

    async def close(self) -> None:
        await self._client.aclose()
