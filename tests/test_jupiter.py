"""Jupiter client and the bounded swap loop."""

import base64

import httpx
import pytest

from heliumtools.adapters.constants import HNT_MINT
from heliumtools.adapters.jupiter import (
    BuildFailed,
    JupiterClient,
    QuoteFailed,
    SwapFailed,
    execute_swap_with_retry,
    usdc_to_base_units,
)
from heliumtools.adapters.solana import ConfirmationTimeout, TransactionFailed

from conftest import build_versioned_tx


def make_client(handler, api_key="") -> JupiterClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JupiterClient("https://jup.test/quote", "https://jup.test/swap", api_key=api_key, http=http)


def test_usdc_to_base_units_rounds_down():
    assert usdc_to_base_units("50") == 50_000_000
    assert usdc_to_base_units("12.3456789") == 12_345_678


async def test_get_quote_sends_params_and_api_key():
    seen = {}

    def handler(request: httpx.Request):
        seen["params"] = dict(request.url.params)
        seen["key"] = request.headers.get("x-api-key")
        return httpx.Response(200, json={"outAmount": "42"})

    client = make_client(handler, api_key="jup-key")
    quote = await client.get_quote("USDC", "HNT", 5_000_000, 100)

    assert quote["outAmount"] == "42"
    assert seen["params"] == {"inputMint": "USDC", "outputMint": "HNT", "amount": "5000000", "slippageBps": "100"}
    assert seen["key"] == "jup-key"


@pytest.mark.parametrize(
    "response",
    [httpx.Response(503, text="unavailable"), httpx.Response(200, json={"routePlan": []})],
)
async def test_get_quote_failures(response):
    client = make_client(lambda _request: response)

    with pytest.raises(QuoteFailed):
        await client.get_quote("USDC", "HNT", 1, 100)


async def test_build_transaction_decodes_swap_transaction(treasury):
    tx = build_versioned_tx(treasury.keypair)
    client = make_client(
        lambda _request: httpx.Response(200, json={"swapTransaction": base64.b64encode(bytes(tx)).decode()})
    )

    built = await client.build_transaction({"outAmount": "1"}, str(treasury.pubkey))

    assert built.message == tx.message


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, text="bad quote"),
        httpx.Response(200, json={}),
        httpx.Response(200, json={"swapTransaction": base64.b64encode(b"garbage").decode()}),
    ],
)
async def test_build_transaction_failures(response, treasury):
    client = make_client(lambda _request: response)

    with pytest.raises(BuildFailed):
        await client.build_transaction({"outAmount": "1"}, str(treasury.pubkey))


def _credit_hnt_on_send(chain, treasury, amount=250_000_000):
    ata = str(treasury.ata(HNT_MINT))

    def on_send(_raw):
        chain.balances[ata] += amount

    chain.on_send = on_send


async def test_swap_requotes_after_a_failed_attempt(chain, jupiter, treasury):
    _credit_hnt_on_send(chain, treasury)
    jupiter.quote_errors = [QuoteFailed("stale")]

    result = await execute_swap_with_retry(jupiter, chain, treasury, "50", retry_delay_seconds=0)

    assert result.hnt_received == 250_000_000
    assert len(jupiter.quotes) == 1
    assert len(chain.sent) == 1
    assert [a.get("error") is None for a in result.attempts] == [False, True]
    assert jupiter.quotes[0]["inAmount"] == "50000000"


async def test_swap_exhaustion_keeps_attempt_audit(chain, jupiter, treasury):
    chain.confirm_error = TransactionFailed("sig", {"Custom": 6001})

    with pytest.raises(SwapFailed) as exc_info:
        await execute_swap_with_retry(jupiter, chain, treasury, "50", max_attempts=3, retry_delay_seconds=0)

    attempts = exc_info.value.attempts
    assert len(attempts) == 3
    assert all(a["signature"] and a["out_amount"] == "500000000" for a in attempts)
    assert len(jupiter.quotes) == 3


async def test_swap_landed_despite_timeout_is_not_resent(chain, jupiter, treasury):
    _credit_hnt_on_send(chain, treasury)
    chain.confirm_error = ConfirmationTimeout("sig", 60)
    chain.landed = True

    result = await execute_swap_with_retry(jupiter, chain, treasury, "50", retry_delay_seconds=0)

    assert result.hnt_received == 250_000_000
    assert len(chain.sent) == 1


async def test_swap_without_hnt_received_fails(chain, jupiter, treasury):
    with pytest.raises(SwapFailed) as exc_info:
        await execute_swap_with_retry(jupiter, chain, treasury, "50", max_attempts=2, retry_delay_seconds=0)

    assert "No HNT received" in exc_info.value.attempts[-1]["error"]
