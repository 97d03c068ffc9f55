"""
Wallet ownership proofs.

EVM networks use EIP-191 ``personal_sign`` messages. Tron wallets sign with
TronWeb's ``signMessageV2`` prefix; the recovered key is rendered as a
base58check ``T...`` address before comparison.
"""

import logging
import re
from typing import Optional

import base58
from eth_account import Account
from eth_account.messages import SignableMessage, encode_defunct
from eth_utils import is_address, to_checksum_address

from .errors import ValidationError
from .models import Network

logger = logging.getLogger(__name__)

SIGNATURE_PATTERN = re.compile(r"^(0x)?[0-9a-fA-F]{130}$")
TRON_ADDRESS_PATTERN = re.compile(r"^T[1-9A-HJ-NP-Za-km-z]{33}$")
TRON_ADDRESS_PREFIX = b"\x41"


def parse_network(value) -> Network:
    try:
        return Network(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unsupported wallet network: {value}")


def normalize_address(address: str, network: Network) -> str:
    address = (address or "").strip()
    if network.is_evm:
        if not is_address(address):
            raise ValidationError("Invalid EVM wallet address")
        return to_checksum_address(address)
    if not TRON_ADDRESS_PATTERN.match(address):
        raise ValidationError("Invalid Tron wallet address format")
    try:
        decoded = base58.b58decode_check(address)
    except ValueError:
        raise ValidationError("Invalid Tron wallet address checksum")
    if len(decoded) != 21 or decoded[:1] != TRON_ADDRESS_PREFIX:
        raise ValidationError("Invalid Tron wallet address")
    return address


def normalize_signature(signature: str) -> bytes:
    signature = (signature or "").strip()
    if not SIGNATURE_PATTERN.match(signature):
        raise ValidationError("Malformed signature: expected 65-byte hex string")
    if signature.startswith("0x"):
        signature = signature[2:]
    return bytes.fromhex(signature)


def tron_signable_message(text: str) -> SignableMessage:
    body = text.encode("utf-8")
    return SignableMessage(
        version=b"T",
        header=b"RON Signed Message:\n" + str(len(body)).encode("ascii"),
        body=body,
    )


def tron_address_from_evm(evm_address: str) -> str:
    raw = bytes.fromhex(evm_address[2:])
    return base58.b58encode_check(TRON_ADDRESS_PREFIX + raw).decode("ascii")


class SignatureVerifier:
    def recover_address(self, message: str, signature: bytes, network: Network) -> Optional[str]:
        """Recover the signer in the network's native address format, or None if unrecoverable."""
        signable = tron_signable_message(message) if network == Network.TRC20 else encode_defunct(text=message)
        try:
            recovered = Account.recover_message(signable, signature=signature)
        except Exception as e:
            logger.info("Signature recovery failed: %s", e, extra={"network": network.value})
            return None
        if network == Network.TRC20:
            return tron_address_from_evm(recovered)
        return to_checksum_address(recovered)

    def verify(self, message: str, signature: bytes, claimed_address: str, network: Network) -> bool:
        recovered = self.recover_address(message, signature, network)
        if recovered is None:
            return False
        return recovered == claimed_address
