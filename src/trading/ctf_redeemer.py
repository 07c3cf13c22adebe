"""
On-Chain Position Redeemer for Polymarket Conditional Tokens

Redeems settled outcome tokens by calling redeemPositions on the
Conditional Tokens Framework (CTF) contract on Polygon via web3.py.

Features:
- Both index sets ([1, 2]) are passed; the contract only pays out winners
- Gas estimated per call, legacy gas price from the node
- Waits for the receipt and reports the transaction hash

CTF on Polygon:  0x4D97DCd97eC945f40cF65F87097ACe5EA0476045
USDC on Polygon: 0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174
"""
import logging
from typing import Optional

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from ..config import CHAIN_ID, POLYGON_RPC_URL

logger = logging.getLogger(__name__)

CTF_CONTRACT_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"
USDC_CONTRACT_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"

# Binary markets: index set 1 = first outcome (Up), 2 = second outcome (Down)
BINARY_INDEX_SETS = [1, 2]

PARENT_COLLECTION_ID = b"\x00" * 32

RECEIPT_TIMEOUT = 120
GAS_BUFFER = 1.2

# Minimal CTF ABI for redeemPositions
CTF_REDEEM_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "collateralToken", "type": "address"},
            {"name": "parentCollectionId", "type": "bytes32"},
            {"name": "conditionId", "type": "bytes32"},
            {"name": "indexSets", "type": "uint256[]"},
        ],
        "name": "redeemPositions",
        "outputs": [],
        "type": "function",
    }
]


class RedemptionError(Exception):
    """Raised when a redemption transaction cannot be built, sent or confirmed."""
    pass


def condition_id_bytes(condition_id: str) -> bytes:
    """Parse a 0x-prefixed 32-byte condition id."""
    stripped = condition_id[2:] if condition_id.startswith("0x") else condition_id
    raw = bytes.fromhex(stripped)
    if len(raw) != 32:
        raise ValueError(f"Condition id must be 32 bytes, got {len(raw)}: {condition_id}")
    return raw


class CtfRedeemer:
    """
    Sends redeemPositions transactions from the signing wallet.

    Example:
        redeemer = CtfRedeemer(private_key="0x...")
        tx_hash = redeemer.redeem("0xabc...")
    """

    def __init__(
        self,
        private_key: str,
        rpc_url: str = POLYGON_RPC_URL,
        chain_id: int = CHAIN_ID,
        web3: Optional[Web3] = None,
    ):
        """
        Args:
            private_key: Key of the wallet holding the outcome tokens
            rpc_url: Polygon RPC endpoint URL
            chain_id: Chain id used when signing
            web3: Pre-built Web3 instance (tests)
        """
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self._web3 = web3 or Web3(Web3.HTTPProvider(rpc_url))
        self._account = self._web3.eth.account.from_key(private_key)
        self._contract = self._web3.eth.contract(
            address=Web3.to_checksum_address(CTF_CONTRACT_ADDRESS),
            abi=CTF_REDEEM_ABI,
        )

    @property
    def address(self) -> str:
        return self._account.address

    def redeem(self, condition_id: str, index_sets: Optional[list[int]] = None) -> str:
        """
        Redeem all positions of a resolved condition.

        Args:
            condition_id: Market condition id (0x + 64 hex chars)
            index_sets: Outcome index sets (defaults to both binary outcomes)

        Returns:
            Transaction hash (hex)

        Raises:
            RedemptionError: If the transaction fails or reverts
        """
        try:
            call = self._contract.functions.redeemPositions(
                Web3.to_checksum_address(USDC_CONTRACT_ADDRESS),
                PARENT_COLLECTION_ID,
                condition_id_bytes(condition_id),
                index_sets or BINARY_INDEX_SETS,
            )
            w3 = self._web3
            sender = self._account.address
            gas = call.estimate_gas({"from": sender})
            tx = call.build_transaction({
                "from": sender,
                "nonce": w3.eth.get_transaction_count(sender),
                "gas": int(gas * GAS_BUFFER),
                "gasPrice": w3.eth.gas_price,
                "chainId": self.chain_id,
            })
            signed = w3.eth.account.sign_transaction(tx, self._account.key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT)
        except (Web3Exception, requests.RequestException, ValueError) as e:
            raise RedemptionError(f"redeemPositions failed for {condition_id}: {e}") from e

        hex_hash = Web3.to_hex(tx_hash)
        if receipt.get("status") != 1:
            raise RedemptionError(f"redeemPositions reverted: {hex_hash}")

        logger.info(f"Redeemed condition {condition_id[:18]}... tx={hex_hash}")
        return hex_hash
