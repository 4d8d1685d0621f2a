"""Jupiter swap API client and the bounded USDC -> HNT swap used by the processor."""

import asyncio
import base64
import json
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal

import httpx
from solders.transaction import VersionedTransaction

from heliumtools.adapters.constants import HNT_DECIMALS, HNT_MINT, USDC_DECIMALS, USDC_MINT
from heliumtools.adapters.data_credits import IntegrityCheckFailed
from heliumtools.adapters.solana import ChainError, ConfirmationTimeout
from heliumtools.common.logging import logger
from heliumtools.common.metrics import retries_total, swap_attempts_total


class JupiterError(Exception):
    pass


class QuoteFailed(JupiterError):
    pass


class BuildFailed(JupiterError):
    pass


class NoHntReceived(IntegrityCheckFailed):
    pass


class SwapFailed(Exception):
    """Every swap attempt failed; `attempts` holds one audit record per try."""

    def __init__(self, message: str, attempts: list[dict]) -> None:
        super().__init__(message)
        self.attempts = attempts


@dataclass(frozen=True)
class SwapResult:
    signature: str
    hnt_received: int
    quote_json: str
    attempts: list[dict] = field(default_factory=list)


class JupiterClient:
    """Stateless quote/build client; callers own retries."""

    def __init__(
        self,
        quote_url: str,
        swap_url: str,
        api_key: str = "",
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.quote_url = quote_url
        self.swap_url = swap_url
        self.api_key = api_key
        self._client = http or httpx.AsyncClient(timeout=30.0)

    def _headers(self) -> dict:
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> dict:
        params = {
            "inputMint": str(input_mint),
            "outputMint": str(output_mint),
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }
        try:
            resp = await self._client.get(self.quote_url, params=params, headers=self._headers())
        except httpx.HTTPError as exc:
            raise QuoteFailed(f"Jupiter quote request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise QuoteFailed(f"Jupiter quote failed: {resp.status_code} - {resp.text}")
        data = resp.json()
        if not isinstance(data, dict) or "outAmount" not in data:
            raise QuoteFailed("Jupiter quote response missing outAmount")
        return data

    async def build_transaction(self, quote: dict, user_public_key: str) -> VersionedTransaction:
        """Ask Jupiter for the unsigned swap transaction for `quote`."""

        payload = {
            "quoteResponse": quote,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        try:
            resp = await self._client.post(self.swap_url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise BuildFailed(f"Jupiter swap build request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise BuildFailed(f"Jupiter swap build failed: {resp.status_code} - {resp.text}")
        data = resp.json()
        tx_b64 = data.get("swapTransaction") if isinstance(data, dict) else None
        if not tx_b64:
            raise BuildFailed("Jupiter swap response missing swapTransaction")
        try:
            return VersionedTransaction.from_bytes(base64.b64decode(tx_b64))
        except Exception as exc:
            raise BuildFailed(f"Jupiter swap transaction could not be decoded: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()


def usdc_to_base_units(usdc_amount) -> int:
    scaled = Decimal(str(usdc_amount)) * (Decimal(10) ** USDC_DECIMALS)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


async def execute_swap_with_retry(
    jupiter: JupiterClient,
    chain,
    treasury,
    usdc_amount,
    *,
    max_attempts: int = 3,
    slippage_bps: int = 100,
    retry_delay_seconds: float = 2.0,
    confirm_timeout_seconds: float = 60.0,
    service_name: str = "dc-purchase",
) -> SwapResult:
    """Swap `usdc_amount` (whole USDC) to HNT, re-quoting on every attempt.

    Success requires a confirmed transaction and a positive change in the
    treasury HNT balance measured against the balance before the first attempt.
    """

    amount = usdc_to_base_units(usdc_amount)
    if amount <= 0:
        raise ValueError("usdc_amount must be positive")

    hnt_ata = treasury.ata(HNT_MINT)
    before = await chain.get_token_balance(hnt_ata)
    attempts: list[dict] = []

    for attempt in range(1, max_attempts + 1):
        record: dict = {"attempt": attempt}
        attempts.append(record)
        logger.info("swap_attempt attempt=%s/%s usdc=%s", attempt, max_attempts, usdc_amount)
        try:
            quote = await jupiter.get_quote(str(USDC_MINT), str(HNT_MINT), amount, slippage_bps)
            record["out_amount"] = quote.get("outAmount")

            unsigned = await jupiter.build_transaction(quote, str(treasury.pubkey))
            signed = VersionedTransaction(unsigned.message, [treasury.keypair])
            signature = str(signed.signatures[0])
            record["signature"] = signature

            try:
                await chain.send_transaction(bytes(signed))
                await chain.wait_for_confirmation(signature, confirm_timeout_seconds)
            except (ConfirmationTimeout, httpx.TransportError):
                if not await chain.landed_after_error(signature):
                    raise
                logger.info("swap_landed_despite_error signature=%s", signature)

            after = await chain.get_token_balance(hnt_ata)
            received = after - before
            if received <= 0:
                raise NoHntReceived(f"No HNT received after swap {signature}")

            swap_attempts_total.labels(service=service_name, result="success").inc()
            logger.info("swap_succeeded signature=%s hnt=%s", signature, received / 10**HNT_DECIMALS)
            return SwapResult(
                signature=signature,
                hnt_received=received,
                quote_json=json.dumps(quote),
                attempts=attempts,
            )
        except (JupiterError, ChainError, IntegrityCheckFailed, httpx.HTTPError) as exc:
            record["error"] = str(exc)
            swap_attempts_total.labels(service=service_name, result="failure").inc()
            logger.warning("swap_attempt_failed attempt=%s error=%s", attempt, exc)
            if attempt < max_attempts:
                retries_total.labels(service=service_name, dependency="jupiter").inc()
                await asyncio.sleep(retry_delay_seconds)

    last_error = attempts[-1].get("error") if attempts else None
    raise SwapFailed(f"Swap failed after {max_attempts} attempts: {last_error}", attempts)
