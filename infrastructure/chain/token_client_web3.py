from __future__ import annotations

import logging
import threading
from decimal import Decimal
from typing import Optional

from web3 import Web3
from web3.exceptions import TimeExhausted

from domain.models import TransferResult
from domain.repositories import TokenTransferClient

logger = logging.getLogger(__name__)

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

GAS_BUFFER_PERCENT = 120
RECEIPT_TIMEOUT_SECONDS = 180


class Web3TokenClient(TokenTransferClient):
    """
    ERC-20 transfers from the bot wallet.

    Amounts are whole tokens; they are scaled by the contract's `decimals()`
    before sending. Transfers are serialized so concurrent payouts never
    race for the same nonce.
    """

    def __init__(self, rpc_url: str, token_address: str, private_key: str) -> None:
        self._w3 = Web3(Web3.HTTPProvider(rpc_url))
        self._account = self._w3.eth.account.from_key(private_key)
        self._token = self._w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=ERC20_ABI,
        )
        self._decimals: Optional[int] = None
        self._lock = threading.Lock()

    def get_bot_address(self) -> str:
        return self._account.address

    def _get_decimals(self) -> int:
        if self._decimals is None:
            self._decimals = int(self._token.functions.decimals().call())
        return self._decimals

    def validate_address(self, address: str) -> bool:
        if not address:
            return False
        return Web3.is_address(address)

    def get_balance(self, address: Optional[str] = None) -> Decimal:
        """Token balance of `address` (the bot wallet by default) in whole tokens."""

        owner = Web3.to_checksum_address(address or self._account.address)
        raw = self._token.functions.balanceOf(owner).call()
        return Decimal(raw) / (Decimal(10) ** self._get_decimals())

    def send_tokens(self, address: str, amount: int) -> TransferResult:
        if not self.validate_address(address):
            return TransferResult(success=False, error="invalid recipient address")
        if amount <= 0:
            return TransferResult(success=False, error="amount must be positive")

        with self._lock:
            try:
                return self._send(Web3.to_checksum_address(address), amount)
            except Exception as exc:
                logger.exception("Token transfer of %s to %s failed", amount, address)
                return TransferResult(success=False, error=str(exc))

    def _send(self, recipient: str, amount: int) -> TransferResult:
        raw_amount = amount * 10 ** self._get_decimals()
        balance = self._token.functions.balanceOf(self._account.address).call()
        if balance < raw_amount:
            return TransferResult(
                success=False,
                error=f"insufficient bot balance: need {raw_amount}, have {balance}",
            )

        transfer = self._token.functions.transfer(recipient, raw_amount)
        gas_estimate = transfer.estimate_gas({"from": self._account.address})
        tx = transfer.build_transaction(
            {
                "from": self._account.address,
                "nonce": self._w3.eth.get_transaction_count(
                    self._account.address, "pending"
                ),
                "gas": gas_estimate * GAS_BUFFER_PERCENT // 100,
            }
        )
        signed = self._account.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        reference = Web3.to_hex(tx_hash)
        logger.info("Sent %s tokens to %s, tx %s", amount, recipient, reference)

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS
            )
        except TimeExhausted:
            logger.warning("No receipt for %s after %ss", reference, RECEIPT_TIMEOUT_SECONDS)
            return TransferResult(
                success=False,
                reference=reference,
                error="transaction not confirmed",
            )
        if receipt["status"] != 1:
            return TransferResult(
                success=False,
                reference=reference,
                error="transaction reverted",
            )
        return TransferResult(success=True, reference=reference)
