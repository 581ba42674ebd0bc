import hashlib
import hmac
import time

from .constants import VERSION
from .identity import IdentityStore

TRAILER_COMMIT = "Autopilot-Commit"
TRAILER_VERSION = "Autopilot-Version"
TRAILER_USER = "Autopilot-User"
TRAILER_SIGNATURE = "Autopilot-Signature"


def compute_signature(message: str, timestamp: int, version: str, key: str) -> str:
    """HMAC-SHA256 of message + timestamp + version, hex encoded."""
    payload = f"{message}{timestamp}{version}".encode()
    return hmac.new(key.encode(), payload, hashlib.sha256).hexdigest()


class TrustSigner:
    """Appends attribution trailers to commit messages.

    The key is the anonymous installation id, which is not secret: the
    signature marks a commit as daemon-authored, it does not authenticate it.

    Attributes:
        identity (IdentityStore): Source of the anonymous user id.
        version (str): The daemon version recorded in the trailer.
    """

    def __init__(self, identity: IdentityStore, version: str = VERSION):
        self.identity = identity
        self.version = version

    def sign(self, message: str, timestamp: int | None = None) -> str:
        """Returns the message with the four trailer lines appended.

        Args:
            message (str): The commit message to sign.
            timestamp (int | None): Unix seconds; defaults to now.
        """
        ts = int(time.time()) if timestamp is None else timestamp
        body = message.rstrip("\n")
        user_id = self.identity.get().id
        signature = compute_signature(body, ts, self.version, user_id)
        trailers = [
            f"{TRAILER_COMMIT}: true",
            f"{TRAILER_VERSION}: {self.version}",
            f"{TRAILER_USER}: {user_id}",
            f"{TRAILER_SIGNATURE}: {signature}",
        ]
        return body + "\n\n" + "\n".join(trailers)

    def verify(self, signed_message: str, timestamp: int) -> bool:
        """Checks a signed message against the timestamp it was signed at."""
        body, trailers = split_trailers(signed_message)
        signature = trailers.get(TRAILER_SIGNATURE)
        user_id = trailers.get(TRAILER_USER)
        version = trailers.get(TRAILER_VERSION, self.version)
        if not signature or not user_id:
            return False
        expected = compute_signature(body, timestamp, version, user_id)
        return hmac.compare_digest(signature, expected)


def split_trailers(message: str) -> tuple[str, dict[str, str]]:
    """Separates a signed message into its original text and trailer values."""
    text, sep, block = message.rpartition("\n\n")
    if not sep:
        return message, {}
    trailers = {}
    for line in block.splitlines():
        key, colon, value = line.partition(": ")
        if not colon or not key.startswith("Autopilot-"):
            return message, {}
        trailers[key] = value
    return text, trailers
