"""
WhatsApp Flow request/response encryption

Inbound: {encrypted_flow_data, encrypted_aes_key, initial_vector}, all Base64.
The AES session key is RSA-OAEP(SHA-256) encrypted to our private key; the
payload is AES-GCM with the 16-byte auth tag appended. Responses are always
encrypted with the bitwise-inverted IV and returned as one Base64 string.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import Config
from utils.exception_handler import ChatWalletError

logger = logging.getLogger(__name__)

TAG_LENGTH = 16
AES_KEY_BITS = {16: 128, 24: 192, 32: 256}


class FlowDecryptionError(ChatWalletError):
    """The client must re-fetch our public key (HTTP 421)"""

    code = "FlowDecryptionError"
    http_status = 421


@dataclass
class DecryptedFlowRequest:
    payload: Dict[str, Any]
    aes_key: bytes
    iv: bytes
    used_flipped_iv: bool

    @property
    def algorithm(self) -> str:
        return f"AES-{AES_KEY_BITS[len(self.aes_key)]}-GCM"


def b64decode_any(value: str) -> bytes:
    """Standard or URL-safe Base64, with or without padding"""
    if not isinstance(value, str) or not value.strip():
        raise FlowDecryptionError("Empty Base64 field")
    cleaned = "".join(value.split()).replace("-", "+").replace("_", "/")
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise FlowDecryptionError(f"Invalid Base64: {e}")


def flip_iv(iv: bytes) -> bytes:
    return bytes(b ^ 0xFF for b in iv)


def load_private_key(key_text: Optional[str] = None, passphrase: Optional[str] = None) -> rsa.RSAPrivateKey:
    """
    PEM (escaped or real newlines, CRLF tolerated) or compact Base64 DER PKCS#8
    such as a single-line "MII..." value.
    """
    key_text = key_text if key_text is not None else Config.WHATSAPP_FLOW_PRIVATE_KEY
    if passphrase is None:
        passphrase = Config.WHATSAPP_FLOW_PASSPHRASE
    if not key_text:
        raise FlowDecryptionError("Flow private key not configured")

    password = passphrase.encode() if passphrase else None
    normalised = key_text.strip().strip('"').replace("\\n", "\n").replace("\r\n", "\n").replace("\r", "\n")
    try:
        if "-----BEGIN" in normalised:
            key = serialization.load_pem_private_key(normalised.encode(), password=password)
        else:
            key = serialization.load_der_private_key(b64decode_any(normalised), password=password)
    except (ValueError, TypeError) as e:
        logger.error(f"❌ FLOW_KEY_INVALID: {type(e).__name__}")
        raise FlowDecryptionError(f"Cannot load flow private key: {e}")

    if not isinstance(key, rsa.RSAPrivateKey):
        raise FlowDecryptionError("Flow private key is not an RSA key")
    return key


_OAEP = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def decrypt_request(body: Dict[str, Any], private_key: rsa.RSAPrivateKey) -> DecryptedFlowRequest:
    """Decrypt an inbound flow request, trying the received IV and then its inverse"""
    try:
        encrypted_data = b64decode_any(body["encrypted_flow_data"])
        encrypted_key = b64decode_any(body["encrypted_aes_key"])
        iv = b64decode_any(body["initial_vector"])
    except KeyError as e:
        raise FlowDecryptionError(f"Missing field {e}")

    try:
        aes_key = private_key.decrypt(encrypted_key, _OAEP)
    except ValueError as e:
        logger.error("❌ FLOW_KEY_DECRYPT_FAILED: RSA-OAEP rejected the session key")
        raise FlowDecryptionError(f"Session key decryption failed: {e}")

    if len(aes_key) not in AES_KEY_BITS:
        raise FlowDecryptionError(f"Unsupported AES key length {len(aes_key)}")
    if len(encrypted_data) <= TAG_LENGTH:
        raise FlowDecryptionError("Ciphertext shorter than auth tag")

    aesgcm = AESGCM(aes_key)
    # AESGCM expects ciphertext || tag, which is the wire layout
    for candidate, flipped in ((iv, False), (flip_iv(iv), True)):
        try:
            plaintext = aesgcm.decrypt(candidate, encrypted_data, None)
        except InvalidTag:
            continue
        try:
            payload = orjson.loads(plaintext)
        except orjson.JSONDecodeError as e:
            raise FlowDecryptionError(f"Decrypted payload is not JSON: {e}")
        if flipped:
            logger.info("🔐 FLOW_IV_FLIPPED: request decrypted with inverted IV")
        return DecryptedFlowRequest(payload=payload, aes_key=aes_key, iv=iv, used_flipped_iv=flipped)

    logger.error("❌ FLOW_DECRYPT_FAILED: auth tag mismatch with both IV variants")
    raise FlowDecryptionError("Payload decryption failed")


def encrypt_response(payload: Dict[str, Any], aes_key: bytes, iv: bytes) -> str:
    """Base64(ciphertext || tag), always under the inverted request IV"""
    ciphertext = AESGCM(aes_key).encrypt(flip_iv(iv), orjson.dumps(payload), None)
    return base64.b64encode(ciphertext).decode()
