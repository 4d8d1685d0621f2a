"""Shared fixtures: in-memory database, seeded OUI directory, and chain/swap fakes."""

import os
import struct
from collections import defaultdict

os.environ.setdefault("DATABASE_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("COINBASE_WEBHOOK_SECRET", "whsec-test")
os.environ.setdefault("RECONCILIATION_INTERVAL_SECONDS", "0")
os.environ.setdefault("PROCESSOR_STEP_DELAY_SECONDS", "0")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from heliumtools.adapters.constants import DC_MINT, HNT_MINT
from heliumtools.adapters.data_credits import (
    DELEGATE_DATA_CREDITS_DISCRIMINATOR,
    MINT_DATA_CREDITS_DISCRIMINATOR,
    Treasury,
    escrow_account_for,
)
from heliumtools.common.db import Base, SessionLocal, engine
from heliumtools.services.dc_purchase import models  # noqa: F401
from heliumtools.services.dc_purchase.directory import OuiDirectory
from heliumtools.services.dc_purchase.orders import OrderService
from heliumtools.services.dc_purchase.processor import OrderProcessor, SwapPolicy


ROUTER_KEY = "112qB3YaH5bZkCnKA5uRH7tBtGNv2Y5B4smv1jsmvGUzgKT71QpE"
ESCROW = "EscrowAccount42"


class FakeChain:
    """In-memory stand-in for SolanaClient.

    Balances are keyed by account address. `on_send` and `on_submit` hooks let a
    test decide what a transaction does to those balances.
    """

    def __init__(self) -> None:
        self.balances = defaultdict(int)
        self.sent: list[bytes] = []
        self.submitted: list[list] = []
        self.on_send = None
        self.on_submit = None
        self.confirm_error: Exception | None = None
        self.landed = False

    async def get_token_balance(self, account) -> int:
        return self.balances[str(account)]

    async def send_transaction(self, raw: bytes) -> str:
        self.sent.append(raw)
        if self.on_send is not None:
            self.on_send(raw)
        return "sent"

    async def wait_for_confirmation(self, signature: str, timeout_seconds: float | None = None) -> None:
        if self.confirm_error is not None:
            raise self.confirm_error

    async def landed_after_error(self, signature: str) -> bool:
        return self.landed

    async def submit_and_confirm(self, instructions, signers) -> str:
        self.submitted.append(list(instructions))
        if self.on_submit is not None:
            self.on_submit(instructions)
        return f"sig-{len(self.submitted)}"


class FakeJupiter:
    def __init__(self, treasury: Treasury, out_amount: int = 500_000_000) -> None:
        self.treasury = treasury
        self.out_amount = out_amount
        self.quotes: list[dict] = []
        self.quote_errors: list[Exception] = []

    async def get_quote(self, input_mint, output_mint, amount, slippage_bps) -> dict:
        if self.quote_errors:
            raise self.quote_errors.pop(0)
        quote = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "inAmount": str(amount),
            "outAmount": str(self.out_amount),
            "slippageBps": slippage_bps,
        }
        self.quotes.append(quote)
        return quote

    async def build_transaction(self, quote: dict, user_public_key: str) -> VersionedTransaction:
        return build_versioned_tx(self.treasury.keypair)


def build_versioned_tx(payer: Keypair) -> VersionedTransaction:
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.new_unique(), lamports=1))
    message = MessageV0.try_compile(payer.pubkey(), [ix], [], Hash.default())
    return VersionedTransaction(message, [payer])


def simulate_helium_programs(chain: FakeChain, treasury: Treasury, dc_per_hnt_unit: int = 1) -> None:
    """Make swaps credit HNT, mints credit DC, and delegations credit the escrow."""

    hnt_ata = str(treasury.ata(HNT_MINT))
    dc_ata = str(treasury.ata(DC_MINT))

    def on_send(_raw):
        chain.balances[hnt_ata] += 500_000_000

    def on_submit(instructions):
        for ix in instructions:
            data = bytes(ix.data)
            if data[:8] == MINT_DATA_CREDITS_DISCRIMINATOR:
                (hnt_amount,) = struct.unpack_from("<Q", data, 9)
                chain.balances[hnt_ata] -= hnt_amount
                chain.balances[dc_ata] += hnt_amount * dc_per_hnt_unit // 10_000
            elif data[:8] == DELEGATE_DATA_CREDITS_DISCRIMINATOR:
                (dc_amount,) = struct.unpack_from("<Q", data, 8)
                (key_len,) = struct.unpack_from("<I", data, 16)
                router_key = data[20 : 20 + key_len].decode()
                chain.balances[dc_ata] -= dc_amount
                chain.balances[str(escrow_account_for(router_key))] += dc_amount

    chain.on_send = on_send
    chain.on_submit = on_submit


class FakeRedis:
    def __init__(self) -> None:
        self.hashes: dict[str, dict] = {}
        self.values: dict[str, str] = {}

    def hmget(self, key, *fields):
        row = self.hashes.get(key, {})
        return [row.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        return True

    def get(self, key):
        return self.values.get(key)

    def setex(self, key, seconds, value):
        self.values[key] = value


@pytest.fixture(autouse=True)
def db_schema():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def directory():
    oui_directory = OuiDirectory(SessionLocal)
    oui_directory.upsert_ouis(
        [{"oui": 42, "owner": "OwnerKey42", "payer": ROUTER_KEY, "escrow": ESCROW, "delegate_keys": [], "locked": False}]
    )
    return oui_directory


@pytest.fixture
def order_service(directory):
    return OrderService(SessionLocal, directory, min_usd=5, max_usd=1000)


@pytest.fixture
def treasury():
    return Treasury(Keypair())


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def jupiter(treasury):
    return FakeJupiter(treasury)


@pytest.fixture
def processor(order_service, chain, jupiter, treasury):
    simulate_helium_programs(chain, treasury)
    return OrderProcessor(
        order_service,
        chain,
        jupiter,
        treasury,
        swap_policy=SwapPolicy(max_attempts=3, retry_delay_seconds=0, confirm_timeout_seconds=1),
        step_delay_seconds=0,
    )


@pytest.fixture
def new_order(order_service):
    """Factory creating an order for OUI 42 in `created`."""

    def _create(usd="50"):
        beneficiary = order_service.resolve_beneficiary(42)
        return order_service.create_order(42, beneficiary, usd)

    return _create
