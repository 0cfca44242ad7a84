"""
Shielded lending toolkit.

Commitments, Merkle membership, nullifiers and proof inputs for private
collateralized borrowing on Starknet.
"""

import logging

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
