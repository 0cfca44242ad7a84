"""
⚠️ DRAFT — requires protocol review before production use

Protocol configuration for shielded lending.

Constants shared by the commitment, Merkle, health and calldata layers.
Values that depend on a deployment (RPC endpoint, vault address, prover
command) live in settings.py instead.
"""

# ============================================================================
# FIELD
# ============================================================================

# STARK prime field, every commitment, root and nullifier is an element of it
STARK_PRIME = 2**251 + 17 * 2**192 + 1
FELT_BYTES = 32

# ============================================================================
# HASH FUNCTIONS
# ============================================================================

HASH_FUNCTION = "SHA256"
DOMAIN_SEPARATOR_PREFIX = b"SHIELDED_LENDING_V1_"

DOMAIN_SEPARATORS = {
    "commitment": DOMAIN_SEPARATOR_PREFIX + b"COMMITMENT",
    "nullifier": DOMAIN_SEPARATOR_PREFIX + b"NULLIFIER",
    "merkle_node": DOMAIN_SEPARATOR_PREFIX + b"MERKLE_NODE",
}

# ============================================================================
# MERKLE TREE
# ============================================================================

MERKLE_DEPTH = 20

# ============================================================================
# UNITS AND PRICES
# ============================================================================

BTC_DECIMALS = 8
USDC_DECIMALS = 6
PRICE_DECIMALS = 6

# Fixed oracle values used for the local gate and the proof inputs
BTC_PRICE = 65_000 * 10**PRICE_DECIMALS
USDC_PRICE = 1 * 10**PRICE_DECIMALS

# ============================================================================
# HEALTH FACTOR
# ============================================================================

# Minimums expressed in percent, as the circuit consumes them
BORROW_MIN_HEALTH_PERCENT = 110
EXIT_MIN_HEALTH_PERCENT = 150

# On-chain health factor scale (1.5 -> 1_500_000)
HEALTH_FACTOR_SCALE = 1_000_000

HEALTHY_THRESHOLD = (3, 2)
WARNING_THRESHOLD = (6, 5)

# ============================================================================
# LIMITS AND TIMEOUTS
# ============================================================================

MAX_PROOF_BYTES = 64 * 1024
U128_MAX = 2**128 - 1
U256_MAX = 2**256 - 1

PROOF_TIMEOUT_SEC = 120.0
RPC_TIMEOUT_SEC = 30.0
SUBMISSION_TIMEOUT_SEC = 180.0
RECEIPT_POLL_INTERVAL_SEC = 2.0

# ============================================================================
# PERSISTENCE
# ============================================================================

STORAGE_KEY_PREFIX = "shielded_lending_commitments"
RECORD_FORMAT_VERSION = 1
ARTIFACT_VERSION = 1


# ============================================================================
# VALIDATION
# ============================================================================


def validate_config() -> bool:
    """
    Validate configuration parameters.

    Returns:
        True if configuration is valid

    Raises:
        AssertionError: If configuration is invalid
    """
    assert STARK_PRIME < 2 ** (8 * FELT_BYTES), "Field does not fit felt encoding"
    assert 0 < MERKLE_DEPTH <= 32, "Unsupported Merkle depth"
    assert HASH_FUNCTION in ["SHA256", "SHA3-256"], "Invalid hash function"
    assert EXIT_MIN_HEALTH_PERCENT > BORROW_MIN_HEALTH_PERCENT, (
        "Exit must require a higher health factor than borrow"
    )
    assert BORROW_MIN_HEALTH_PERCENT > 100, "Borrow minimum must exceed 100%"
    assert PROOF_TIMEOUT_SEC > 0 and SUBMISSION_TIMEOUT_SEC > 0, "Invalid timeouts"
    assert len(set(DOMAIN_SEPARATORS.values())) == len(DOMAIN_SEPARATORS), (
        "Domain separators must be distinct"
    )
    return True


# Auto-validate on import
validate_config()
