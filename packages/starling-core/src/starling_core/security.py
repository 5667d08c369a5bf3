import base64
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

PASSPHRASE_SALT = b"starling-sync-salt"
PBKDF2_ITERATIONS = 480000


class TokenDecryptError(ValueError):
    pass


def derive_key(passphrase: str, salt: bytes = PASSPHRASE_SALT) -> bytes:
    """Fernet key for a passphrase, used when no OS keyring is available."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(), length=32, salt=salt, iterations=PBKDF2_ITERATIONS
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


class TokenCipher:
    """Encrypts access tokens for the config file. Decryption never passes
    ciphertext through: a token that does not open is an error."""

    def __init__(self, key: bytes):
        self.fernet = Fernet(key)

    @staticmethod
    def generate_key() -> bytes:
        return Fernet.generate_key()

    @classmethod
    def from_passphrase(cls, passphrase: str) -> "TokenCipher":
        return cls(derive_key(passphrase))

    def encrypt(self, token: str) -> str:
        if not token:
            raise ValueError("Refusing to store an empty token")
        return self.fernet.encrypt(token.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not isinstance(ciphertext, str) or not ciphertext:
            raise TokenDecryptError("Stored token is missing or not text")
        try:
            return self.fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise TokenDecryptError(
                "Stored token cannot be decrypted; was the keyring entry replaced?"
            ) from e
