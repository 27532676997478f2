"""Time-limited playback URLs for private HLS objects.

Strategy is fixed at construction from the CloudFront settings present:

1. cdn_signed        domain + key-pair id + private key  -> CloudFront canned-policy URL
2. cdn_public        domain only                         -> plain CDN URL (degraded, warns)
3. origin_presigned  no CDN                              -> the object store's own presign
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from urllib.parse import parse_qs, quote, urlsplit
from botocore.signers import CloudFrontSigner
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from app.core import errors
from app.modules.media.keys import extract_storage_key
from app.platform.ports.object_storage import ObjectStoragePort

log = logging.getLogger("media.signing")

DEFAULT_TTL_SECONDS = 3600
REFRESH_MARGIN_SECONDS = 300

class SigningStrategy(str, Enum):
    cdn_signed = "cdn_signed"
    cdn_public = "cdn_public"
    origin_presigned = "origin_presigned"

@dataclass(frozen=True)
class SignedAccessGrant:
    """Bearer capability: whoever holds ``url`` can read ``storage_key`` until ``expires_at``."""
    url: str
    expires_at: datetime
    storage_key: str
    strategy: SigningStrategy

    def seconds_remaining(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        return max(0, int((self.expires_at - now).total_seconds()))

    def needs_refresh(self, now: datetime | None = None) -> bool:
        return self.seconds_remaining(now) < REFRESH_MARGIN_SECONDS

    def __repr__(self) -> str:
        # keep signatures out of logs and tracebacks
        return f"SignedAccessGrant(storage_key={self.storage_key!r}, strategy={self.strategy.value}, expires_at={self.expires_at.isoformat()})"

def load_private_key(pem: str | bytes) -> rsa.RSAPrivateKey:
    if isinstance(pem, str):
        # env files often carry the PEM on one line with literal "\n"
        pem = pem.replace("\\n", "\n").encode()
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise errors.SigningError(f"CloudFront private key could not be loaded: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise errors.SigningError("CloudFront private key must be an RSA key")
    return key

def seconds_until_expiry(url: str, now: datetime | None = None) -> int:
    """Remaining validity encoded in a minted URL; 0 when the shape is unknown."""
    now = now or datetime.now(timezone.utc)
    qs = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
    expires_at = None
    try:
        if "Expires" in qs:  # CloudFront canned policy
            expires_at = datetime.fromtimestamp(int(qs["Expires"]), tz=timezone.utc)
        elif "X-Amz-Date" in qs and "X-Amz-Expires" in qs:  # S3 SigV4
            signed_at = datetime.strptime(qs["X-Amz-Date"], "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
            expires_at = signed_at + timedelta(seconds=int(qs["X-Amz-Expires"]))
        elif "expires" in qs:  # local static mapping
            expires_at = datetime.fromtimestamp(int(qs["expires"]), tz=timezone.utc)
    except (ValueError, OverflowError):
        log.debug("Unparseable expiry in URL query")
    if expires_at is None:
        return 0
    return max(0, int((expires_at - now).total_seconds()))

def needs_refresh(url: str, now: datetime | None = None) -> bool:
    return seconds_until_expiry(url, now) < REFRESH_MARGIN_SECONDS

class UrlSigner:
    def __init__(
        self,
        storage: ObjectStoragePort,
        cdn_domain: str | None = None,
        key_pair_id: str | None = None,
        private_key: str | bytes | None = None,
        default_ttl: int = DEFAULT_TTL_SECONDS,
    ):
        self.storage = storage
        self.cdn_domain = cdn_domain or None
        self.key_pair_id = key_pair_id or None
        self.default_ttl = default_ttl
        self._signer: CloudFrontSigner | None = None

        if self.cdn_domain and self.key_pair_id and private_key:
            rsa_key = load_private_key(private_key)
            self._signer = CloudFrontSigner(
                self.key_pair_id,
                lambda message: rsa_key.sign(message, padding.PKCS1v15(), hashes.SHA1()),
            )
            self.strategy = SigningStrategy.cdn_signed
        elif self.cdn_domain:
            if self.key_pair_id or private_key:
                log.warning("CloudFront signing is half-configured (need both key-pair id and private key)")
            log.warning(f"CloudFront signing keys not configured; serving unsigned URLs from {self.cdn_domain}")
            self.strategy = SigningStrategy.cdn_public
        else:
            self.strategy = SigningStrategy.origin_presigned
        log.info(f"URL signing strategy: {self.strategy.value}")

    def is_fully_secure(self) -> bool:
        return self.strategy is SigningStrategy.cdn_signed

    def cdn_url(self, key: str) -> str:
        return f"https://{self.cdn_domain}/{quote(key.lstrip('/'))}"

    def mint(self, storage_key: str, ttl_seconds: int | None = None, now: datetime | None = None) -> SignedAccessGrant:
        key = extract_storage_key(storage_key).lstrip("/")
        ttl = self.default_ttl if ttl_seconds is None else int(ttl_seconds)
        if ttl <= 0:
            raise errors.ValidationError(f"ttl_seconds must be positive, got {ttl}")
        now = now or datetime.now(timezone.utc)
        expires_at = datetime.fromtimestamp(int(now.timestamp()) + ttl, tz=timezone.utc)

        if self.strategy is SigningStrategy.cdn_signed:
            try:
                url = self._signer.generate_presigned_url(self.cdn_url(key), date_less_than=expires_at)
            except (ValueError, TypeError) as e:
                raise errors.SigningError(f"CloudFront signing failed: {e}") from e
        elif self.strategy is SigningStrategy.cdn_public:
            log.warning(f"Unsigned CDN URL handed out for {key}")
            url = self.cdn_url(key)
        else:
            url = self.storage.presign(key, ttl)

        log.debug(f"Minted {self.strategy.value} URL for {key}, expires {expires_at.isoformat()}")
        return SignedAccessGrant(url=url, expires_at=expires_at, storage_key=key, strategy=self.strategy)
