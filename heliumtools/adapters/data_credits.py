"""Helium Data Credits program: mint DC from HNT and delegate DC to an OUI escrow.

Instruction layouts follow the Anchor IDL of the data-credits program: an
8-byte discriminator followed by Borsh-encoded arguments.
"""

import base64
import binascii
import hashlib
import struct
from dataclasses import dataclass

import base58
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from heliumtools.adapters.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    CIRCUIT_BREAKER_PROGRAM_ID,
    DATA_CREDITS_PROGRAM_ID,
    DC_MINT,
    HELIUM_SUB_DAOS_PROGRAM_ID,
    HNT_DECIMALS,
    HNT_MINT,
    HNT_PYTH_PRICE_FEED,
    IOT_MINT,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)
from heliumtools.common.logging import logger


# sha256("global:<instruction name>")[:8]
MINT_DATA_CREDITS_DISCRIMINATOR = bytes.fromhex("4e6da984905edd39")
DELEGATE_DATA_CREDITS_DISCRIMINATOR = bytes.fromhex("9a38e280a273e205")


class IntegrityCheckFailed(Exception):
    """A confirmed transaction did not produce the expected balance change."""


class CreditsNotMinted(IntegrityCheckFailed):
    pass


class DelegationNotReflected(IntegrityCheckFailed):
    pass


class InvalidTreasuryKey(ValueError):
    pass


@dataclass(frozen=True)
class MintResult:
    signature: str
    dc_minted: int


@dataclass(frozen=True)
class DelegationResult:
    signature: str
    escrow_balance: int


def get_associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def data_credits_pda(dc_mint: Pubkey = DC_MINT) -> Pubkey:
    return Pubkey.find_program_address([b"dc", bytes(dc_mint)], DATA_CREDITS_PROGRAM_ID)[0]


def circuit_breaker_pda(dc_mint: Pubkey = DC_MINT) -> Pubkey:
    return Pubkey.find_program_address([b"mint_windowed_breaker", bytes(dc_mint)], CIRCUIT_BREAKER_PROGRAM_ID)[0]


def dao_pda(hnt_mint: Pubkey = HNT_MINT) -> Pubkey:
    return Pubkey.find_program_address([b"dao", bytes(hnt_mint)], HELIUM_SUB_DAOS_PROGRAM_ID)[0]


def sub_dao_pda(iot_mint: Pubkey = IOT_MINT) -> Pubkey:
    return Pubkey.find_program_address([b"sub_dao", bytes(iot_mint)], HELIUM_SUB_DAOS_PROGRAM_ID)[0]


def delegated_data_credits_pda(sub_dao: Pubkey, router_key: str) -> Pubkey:
    name_hash = hashlib.sha256(router_key.encode("utf-8")).digest()
    return Pubkey.find_program_address(
        [b"delegated_data_credits", bytes(sub_dao), name_hash],
        DATA_CREDITS_PROGRAM_ID,
    )[0]


def escrow_account_pda(delegated_data_credits: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [b"escrow_dc_account", bytes(delegated_data_credits)],
        DATA_CREDITS_PROGRAM_ID,
    )[0]


def escrow_account_for(router_key: str) -> Pubkey:
    return escrow_account_pda(delegated_data_credits_pda(sub_dao_pda(), router_key))


class Treasury:
    """The service-owned wallet that swaps, mints and delegates."""

    def __init__(self, keypair: Keypair) -> None:
        self.keypair = keypair

    @classmethod
    def from_secret(cls, secret: str) -> "Treasury":
        """Load a 64-byte keypair encoded as base64 or base58."""

        if not secret:
            raise InvalidTreasuryKey("TREASURY_PRIVATE_KEY is not set")
        try:
            decoded = base64.b64decode(secret, validate=True)
            if len(decoded) == 64:
                return cls(Keypair.from_bytes(decoded))
        except (binascii.Error, ValueError):
            pass
        try:
            decoded = base58.b58decode(secret)
            if len(decoded) == 64:
                return cls(Keypair.from_bytes(decoded))
        except ValueError:
            pass
        raise InvalidTreasuryKey("expected a base64 or base58 encoded 64-byte keypair")

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    def ata(self, mint: Pubkey) -> Pubkey:
        return get_associated_token_address(self.pubkey, mint)


def build_mint_instruction(treasury_pubkey: Pubkey, hnt_amount: int) -> Instruction:
    """mint_data_credits_v0 with `hnt_amount: Some(n)` and `dc_amount: None`."""

    data = MINT_DATA_CREDITS_DISCRIMINATOR + struct.pack("<BQB", 1, hnt_amount, 0)
    hnt_ata = get_associated_token_address(treasury_pubkey, HNT_MINT)
    dc_ata = get_associated_token_address(treasury_pubkey, DC_MINT)
    accounts = [
        AccountMeta(data_credits_pda(), is_signer=False, is_writable=False),
        AccountMeta(HNT_PYTH_PRICE_FEED, is_signer=False, is_writable=False),
        AccountMeta(hnt_ata, is_signer=False, is_writable=True),
        AccountMeta(dc_ata, is_signer=False, is_writable=True),
        AccountMeta(treasury_pubkey, is_signer=False, is_writable=False),  # recipient
        AccountMeta(treasury_pubkey, is_signer=True, is_writable=True),  # owner
        AccountMeta(HNT_MINT, is_signer=False, is_writable=True),
        AccountMeta(DC_MINT, is_signer=False, is_writable=True),
        AccountMeta(circuit_breaker_pda(), is_signer=False, is_writable=True),
        AccountMeta(CIRCUIT_BREAKER_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(DATA_CREDITS_PROGRAM_ID, data, accounts)


def build_delegate_instruction(treasury_pubkey: Pubkey, dc_amount: int, router_key: str) -> Instruction:
    """delegate_data_credits_v0 with `{amount: u64, router_key: String}`."""

    key_bytes = router_key.encode("utf-8")
    data = DELEGATE_DATA_CREDITS_DISCRIMINATOR + struct.pack("<QI", dc_amount, len(key_bytes)) + key_bytes
    sub_dao = sub_dao_pda()
    delegated = delegated_data_credits_pda(sub_dao, router_key)
    accounts = [
        AccountMeta(delegated, is_signer=False, is_writable=True),
        AccountMeta(data_credits_pda(), is_signer=False, is_writable=False),
        AccountMeta(DC_MINT, is_signer=False, is_writable=False),
        AccountMeta(dao_pda(), is_signer=False, is_writable=False),
        AccountMeta(sub_dao, is_signer=False, is_writable=False),
        AccountMeta(treasury_pubkey, is_signer=True, is_writable=False),  # owner
        AccountMeta(get_associated_token_address(treasury_pubkey, DC_MINT), is_signer=False, is_writable=True),
        AccountMeta(escrow_account_pda(delegated), is_signer=False, is_writable=True),
        AccountMeta(treasury_pubkey, is_signer=True, is_writable=True),  # payer
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(DATA_CREDITS_PROGRAM_ID, data, accounts)


async def mint_credits(chain, treasury: Treasury, hnt_amount: int) -> MintResult:
    """Burn `hnt_amount` HNT base units for DC at the oracle price."""

    if hnt_amount <= 0:
        raise ValueError("hnt_amount must be positive")
    dc_ata = treasury.ata(DC_MINT)
    before = await chain.get_token_balance(dc_ata)
    logger.info("dc_mint_started hnt=%s", hnt_amount / 10**HNT_DECIMALS)

    signature = await chain.submit_and_confirm([build_mint_instruction(treasury.pubkey, hnt_amount)], [treasury.keypair])

    after = await chain.get_token_balance(dc_ata)
    minted = after - before
    if minted <= 0:
        raise CreditsNotMinted(f"No DC minted after transaction {signature}")
    logger.info("dc_minted signature=%s dc=%s", signature, minted)
    return MintResult(signature=signature, dc_minted=minted)


async def get_escrow_balance(chain, router_key: str) -> int:
    return await chain.get_token_balance(escrow_account_for(router_key))


async def delegate_credits(chain, treasury: Treasury, dc_amount: int, router_key: str) -> DelegationResult:
    """Move `dc_amount` DC from the treasury into the escrow for `router_key`."""

    if dc_amount <= 0:
        raise ValueError("dc_amount must be positive")
    before = await get_escrow_balance(chain, router_key)
    logger.info("dc_delegation_started dc=%s router_key=%s", dc_amount, router_key)

    signature = await chain.submit_and_confirm(
        [build_delegate_instruction(treasury.pubkey, dc_amount, router_key)],
        [treasury.keypair],
    )

    after = await get_escrow_balance(chain, router_key)
    if after <= before:
        raise DelegationNotReflected(
            f"Escrow balance did not increase after {signature} (before={before} after={after})"
        )
    logger.info("dc_delegated signature=%s escrow_balance=%s", signature, after)
    return DelegationResult(signature=signature, escrow_balance=after)
