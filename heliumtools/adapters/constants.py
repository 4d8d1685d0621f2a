"""Helium and Solana mainnet addresses used by the treasury pipeline."""

from solders.pubkey import Pubkey


DATA_CREDITS_PROGRAM_ID = Pubkey.from_string("credMBJhYFzfn7NxBMdU4aUqFggAjgztaCcv2Fo6fPT")
HELIUM_SUB_DAOS_PROGRAM_ID = Pubkey.from_string("hdaoVTCqhfHHo75XdAMxBKdUqvq1i5bF23sisBqVgGR")
CIRCUIT_BREAKER_PROGRAM_ID = Pubkey.from_string("circAbx64bbsscPbQzZAUvuXpHqrCe6fLMzc2uKXz9g")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

HNT_MINT = Pubkey.from_string("hntyVP6YFm1Hg25TN9WGLqM12b8TQmcknKrdu1oxWux")
DC_MINT = Pubkey.from_string("dcuc8Amr83Wz27ZkQ2K9NS6r8zRpf1J6cvArEBDZDmm")
USDC_MINT = Pubkey.from_string("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")
IOT_MINT = Pubkey.from_string("iotEVVZLEywoTn1QdwNPddxPWszn3zFhEot3MfL9fns")

# Pyth push-oracle HNT/USD feed, continuously updated by Pyth.
HNT_PYTH_PRICE_FEED = Pubkey.from_string("4DdmDswskDxXGpwHrXUfn2CNUm9rt21ac79GHNTN3J33")

HNT_DECIMALS = 8
DC_DECIMALS = 0
USDC_DECIMALS = 6
