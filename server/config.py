"""
Environment configuration for the MDM director.

Values are read from environment variables on first access. Tests pass an
explicit mapping instead of patching os.environ.
"""
import os
from typing import Mapping, Optional

TRUTHY = {"1", "true", "yes", "on"}


class Config:
    """Director configuration backed by environment variables"""

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self._env = env if env is not None else os.environ
        self._server_url: Optional[str] = None

    def _get(self, key: str, default: str = "") -> str:
        return self._env.get(key, default)

    def _get_bool(self, key: str, default: bool = False) -> bool:
        value = self._env.get(key)
        if value is None:
            return default
        return value.strip().lower() in TRUTHY

    def _get_int(self, key: str, default: int) -> int:
        value = self._env.get(key)
        if value is None or value.strip() == "":
            return default
        try:
            return int(value)
        except ValueError:
            print(f"[CONFIG] WARNING: {key}={value!r} is not an integer, using {default}")
            return default

    @property
    def server_url(self) -> str:
        """
        Base URL of the upstream MDM server, without a trailing slash.

        Falls back to http://localhost:8080 when MICROMDM_URL is unset.
        """
        if self._server_url is None:
            raw = self._get("MICROMDM_URL")
            self._server_url = self._normalize_url(raw) if raw else "http://localhost:8080"
        return self._server_url

    @property
    def api_key(self) -> str:
        return self._get("MICROMDM_API_KEY")

    @property
    def debug(self) -> bool:
        return self._get_bool("DEBUG")

    @property
    def sign(self) -> bool:
        """Whether profiles are signed and enrollment signer drift is checked"""
        return self._get_bool("SIGN")

    @property
    def signed_enrollment_profile(self) -> bool:
        """The enrollment profile on disk is already signed and is pushed as-is"""
        return self._get_bool("SIGNED_ENROLLMENT_PROFILE")

    @property
    def enrollment_profile(self) -> str:
        return self._get("ENROLLMENT_PROFILE")

    @property
    def signing_cert(self) -> str:
        return self._get("SIGNING_CERT")

    @property
    def signing_key(self) -> str:
        return self._get("SIGNING_KEY")

    @property
    def signing_key_password(self) -> Optional[str]:
        return self._get("SIGNING_KEY_PASSWORD") or None

    @property
    def push_concurrency(self) -> int:
        return max(1, self._get_int("PUSH_CONCURRENCY", 50))

    @property
    def not_now_retry_ceiling(self) -> int:
        """Consecutive NotNow sweeps before a device stops being woken; 0 disables the cap"""
        return max(0, self._get_int("NOT_NOW_RETRY_CEILING", 0))

    @property
    def http_timeout_seconds(self) -> float:
        return float(max(1, self._get_int("HTTP_TIMEOUT_SECONDS", 30)))

    def get_database_url(self) -> str:
        return self._get("DATABASE_URL", "sqlite:///./director.db")

    @staticmethod
    def _normalize_url(url: str) -> str:
        """
        Ensure a protocol prefix and strip any trailing slash.
        Bare hosts get https:// except localhost, which gets http://.
        """
        url = url.strip()

        if url.startswith("http://") or url.startswith("https://"):
            return url.rstrip("/")

        if "localhost" in url or url.startswith("127.0.0.1"):
            return f"http://{url}".rstrip("/")
        return f"https://{url}".rstrip("/")

    def validate(self) -> tuple[bool, list[str], list[str]]:
        """
        Check that required settings are present.

        Returns:
            tuple: (is_valid, errors, warnings)
        """
        errors = []
        warnings = []

        if not self._get("MICROMDM_URL"):
            warnings.append("MICROMDM_URL not set - using http://localhost:8080")

        if not self.api_key:
            errors.append("MICROMDM_API_KEY is required to authenticate with the MDM server")

        if self.sign or self.signed_enrollment_profile:
            if not self.enrollment_profile:
                errors.append("ENROLLMENT_PROFILE is required when SIGN or SIGNED_ENROLLMENT_PROFILE is enabled")
            elif not os.path.exists(self.enrollment_profile):
                warnings.append(f"ENROLLMENT_PROFILE {self.enrollment_profile} does not exist yet")

        if self.sign:
            if not self.signing_cert:
                errors.append("SIGNING_CERT is required when SIGN is enabled")
            if not self.signing_key and not self.signed_enrollment_profile:
                errors.append("SIGNING_KEY is required to sign the enrollment profile on the fly")

        db_url = self.get_database_url()
        if "sqlite" in db_url.lower() and not self.debug:
            warnings.append("SQLite database detected - PostgreSQL recommended for production")

        return (len(errors) == 0, errors, warnings)

    def print_config_summary(self):
        print("\n" + "=" * 60)
        print("MDM Director Configuration")
        print("=" * 60)
        print(f"Mode: {'Debug' if self.debug else 'Production'}")
        print(f"MDM Server: {self.server_url}")
        print(f"API Key: {'✓ Set' if self.api_key else '✗ Missing'}")
        print(f"Signing: {'enabled' if self.sign else 'disabled'}")
        print(f"Pre-signed enrollment profile: {self.signed_enrollment_profile}")
        print(f"Push concurrency: {self.push_concurrency}")
        print(f"Database: {self.get_database_url()[:50]}")

        is_valid, errors, warnings = self.validate()
        if is_valid:
            print("Status: ✓ All required configuration present")
            if warnings:
                print(f"Warnings: {len(warnings)} configuration warnings")
        else:
            print("Status: ✗ Configuration issues detected:")
            for error in errors:
                print(f"  - {error}")
        print("=" * 60 + "\n")


config = Config()
