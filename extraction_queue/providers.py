"""Extraction providers: an on-device model or a remote API-backed model."""

import base64
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .errors import ExtractionError, ExtractionErrorKind, ProviderConfigError
from .models import ExtractedRecord, ProviderStatus
from .parsing import parse_model_response
from .storage import DurableStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 45.0
DEFAULT_REMOTE_MODEL = "gemini-2.5-flash-lite"
DEFAULT_REMOTE_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

USE_REMOTE_KEY = "provider.use_remote"
CREDENTIAL_KEY = "provider.remote_credential"

EXTRACTION_INSTRUCTION = (
    "Extract the invoice in this image as one JSON object with the fields "
    "merchantName, merchantAddress, invoiceNumber, date (YYYY-MM-DD), time, "
    "items (name, description, quantity, unitPrice, totalPrice, category), "
    "subtotal, tax, total, currency, paymentMethod, agentName, terms, "
    "termsDays, phoneNumber, email, website and confidence (0-1). "
    "Use null for missing values and plain numbers for amounts."
)


class LocalModel(Protocol):
    """On-device model handle, e.g. a browser or desktop runtime binding."""

    def availability(self) -> str:
        """One of "available", "after-download" or "no"."""
        ...

    def prompt(self, payload: bytes, mime_type: str, instruction: str) -> str:
        ...


class ExtractionProvider(ABC):
    """Base class for extraction backends.

    Subclasses implement ``_generate`` (raw model text for one image);
    ``extract`` bounds it with a timeout and normalizes the answer.
    Providers never retry.
    """

    name = "provider"

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

    @property
    def busy(self) -> bool:
        """True while an ``extract`` call is running."""
        with self._in_flight_lock:
            return self._in_flight > 0

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def _generate(self, payload: bytes, mime_type: str) -> str:
        ...

    def close(self):
        """Release provider resources."""

    def extract(self, payload: bytes, mime_type: str) -> ExtractedRecord:
        """Extract structured data from one document image.

        Args:
            payload: Raw image bytes
            mime_type: Image MIME type

        Returns:
            ExtractedRecord for the image

        Raises:
            ExtractionError: On any provider failure, including timeout
        """
        with self._in_flight_lock:
            self._in_flight += 1
        try:
            return self._extract(payload, mime_type)
        finally:
            with self._in_flight_lock:
                self._in_flight -= 1

    def _extract(self, payload: bytes, mime_type: str) -> ExtractedRecord:
        started = time.time()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.name}-extract")
        try:
            future = executor.submit(self._generate, payload, mime_type)
            try:
                text = future.result(timeout=self.timeout)
            except FuturesTimeout:
                future.cancel()
                raise ExtractionError(
                    ExtractionErrorKind.TIMEOUT,
                    f"The {self.name} model did not answer within {self.timeout:g}s",
                ) from None
            except ExtractionError:
                raise
            except Exception as e:
                logger.error(f"Unexpected {self.name} model failure: {e}", exc_info=True)
                raise ExtractionError(
                    ExtractionErrorKind.UNAVAILABLE, f"The {self.name} model failed: {e}"
                ) from e
        finally:
            # A hung call keeps its thread; it must not hold up the caller
            executor.shutdown(wait=False)

        record = parse_model_response(text, provider=self.name)
        finished = time.time()
        return record.model_copy(update={
            "extracted_at": finished,
            "processing_time": round(finished - started, 3),
        })


class LocalModelProvider(ExtractionProvider):
    """Runs extraction on an on-device model; no network access."""

    name = "local"

    def __init__(self, model: Optional[LocalModel] = None, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(timeout=timeout)
        self.model = model

    def availability(self) -> str:
        if self.model is None:
            return "no"
        try:
            return self.model.availability()
        except Exception as e:
            logger.warning(f"Local model availability check failed: {e}")
            return "no"

    def is_available(self) -> bool:
        return self.availability() == "available"

    def _generate(self, payload: bytes, mime_type: str) -> str:
        status = self.availability()
        if status == "after-download":
            raise ExtractionError(
                ExtractionErrorKind.UNAVAILABLE,
                "The local model is still downloading; try again shortly",
            )
        if status != "available":
            raise ExtractionError(
                ExtractionErrorKind.UNAVAILABLE,
                f"The local model is not available on this device (status: {status})",
            )
        return self.model.prompt(payload, mime_type, EXTRACTION_INSTRUCTION)


class RemoteModelProvider(ExtractionProvider):
    """Calls a Gemini-style generateContent endpoint over HTTP."""

    name = "remote"

    def __init__(
        self,
        credential: Optional[str],
        model: str = DEFAULT_REMOTE_MODEL,
        base_url: str = DEFAULT_REMOTE_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__(timeout=timeout)
        self.credential = (credential or "").strip()
        self.model = model
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
        )

    def is_available(self) -> bool:
        # Assumed reachable when a credential is set; failures show up per call
        return bool(self.credential)

    def close(self):
        self._client.close()

    def _generate(self, payload: bytes, mime_type: str) -> str:
        if not self.credential:
            raise ExtractionError(
                ExtractionErrorKind.UNAUTHORIZED, "No credential configured for the remote model"
            )

        body = {
            "contents": [{
                "parts": [
                    {"text": EXTRACTION_INSTRUCTION},
                    {
                        "inlineData": {
                            "mimeType": mime_type or "image/jpeg",
                            "data": base64.b64encode(payload).decode("ascii"),
                        }
                    },
                ]
            }],
            "generationConfig": {"temperature": 0.1},
        }

        try:
            response = self._client.post(
                f"/models/{self.model}:generateContent",
                headers={"x-goog-api-key": self.credential},
                json=body,
            )
        except httpx.TimeoutException as e:
            raise ExtractionError(ExtractionErrorKind.TIMEOUT, f"Remote model timed out: {e}") from e
        except httpx.TransportError as e:
            raise ExtractionError(ExtractionErrorKind.NETWORK, f"Cannot reach remote model: {e}") from e

        if response.status_code in (401, 403):
            raise ExtractionError(
                ExtractionErrorKind.UNAUTHORIZED,
                f"Remote model rejected the credential (HTTP {response.status_code})",
            )
        if response.status_code == 429:
            raise ExtractionError(
                ExtractionErrorKind.RATE_LIMITED, "Remote model rate limit exceeded (HTTP 429)"
            )
        if response.status_code >= 400:
            raise ExtractionError(
                ExtractionErrorKind.NETWORK, f"Remote model returned HTTP {response.status_code}"
            )

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED_RESPONSE, "Remote model response has no candidate text"
            ) from e

        logger.debug(f"Remote model answered with {len(text)} characters")
        return text


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable snapshot of the provider selection."""
    use_remote: bool = False
    credential: Optional[str] = None


class ProviderSettings:
    """Persisted provider selection and the provider it resolves to.

    ``active()`` is resolved on every extraction, so a switch applies to
    the next call while an in-flight call keeps the provider it started
    with.
    """

    def __init__(
        self,
        store: DurableStore,
        local_model: Optional[LocalModel] = None,
        timeout: float = DEFAULT_TIMEOUT,
        remote_model: str = DEFAULT_REMOTE_MODEL,
        remote_base_url: str = DEFAULT_REMOTE_BASE_URL,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.store = store
        self.timeout = timeout
        self.remote_model = remote_model
        self.remote_base_url = remote_base_url
        self.transport = transport
        self.local = LocalModelProvider(local_model, timeout=timeout)
        self._config = ProviderConfig()
        self._remote: Optional[RemoteModelProvider] = None
        self._retired: list[RemoteModelProvider] = []
        self._lock = threading.Lock()

    def load(self) -> ProviderConfig:
        """Read the persisted selection from the settings table."""
        use_remote = bool(self.store.get_setting(USE_REMOTE_KEY, False))
        credential = self.store.get_setting(CREDENTIAL_KEY)
        if use_remote and not credential:
            logger.warning("Remote provider selected without a credential; using local model")
            use_remote = False
        with self._lock:
            self._config = ProviderConfig(use_remote=use_remote, credential=credential)
        return self._config

    def config(self) -> ProviderConfig:
        with self._lock:
            return self._config

    def set_provider(self, use_remote: bool, credential: Optional[str] = None) -> ProviderConfig:
        """Select the local or remote provider.

        Args:
            use_remote: Use the remote model
            credential: Remote credential; the stored one is kept when omitted

        Returns:
            The new ProviderConfig

        Raises:
            ProviderConfigError: If the remote model is selected without a credential
        """
        credential = (credential or "").strip() or None
        with self._lock:
            credential = credential or self._config.credential
            if use_remote and not credential:
                raise ProviderConfigError("A credential is required to use the remote model")

            if credential != self._config.credential:
                self.store.put_setting(CREDENTIAL_KEY, credential)
            self.store.put_setting(USE_REMOTE_KEY, use_remote)
            self._config = ProviderConfig(use_remote=use_remote, credential=credential)

        logger.info(f"Extraction provider set to {'remote' if use_remote else 'local'}")
        return self._config

    def active(self) -> ExtractionProvider:
        """The provider for the current selection."""
        with self._lock:
            config = self._config
            if not config.use_remote:
                return self.local

            if self._remote is None or self._remote.credential != config.credential:
                if self._remote is not None:
                    self._retired.append(self._remote)
                self._remote = RemoteModelProvider(
                    config.credential,
                    model=self.remote_model,
                    base_url=self.remote_base_url,
                    timeout=self.timeout,
                    transport=self.transport,
                )
            return self._remote

    def release_retired(self) -> int:
        """Close replaced remote providers that have no call running.

        Called by the processor between extractions. Providers still busy
        (e.g. a timed-out call that has not returned) are kept for later.

        Returns:
            Number of providers closed
        """
        with self._lock:
            idle = [provider for provider in self._retired if not provider.busy]
            self._retired = [provider for provider in self._retired if provider.busy]
        for provider in idle:
            provider.close()
        if idle:
            logger.debug(f"Closed {len(idle)} replaced remote providers")
        return len(idle)

    def status(self) -> ProviderStatus:
        config = self.config()
        provider = self.active()
        return ProviderStatus(
            use_remote=config.use_remote,
            has_credential=bool(config.credential),
            provider=provider.name,
            available=provider.is_available(),
        )

    def close(self):
        with self._lock:
            providers = self._retired + ([self._remote] if self._remote else [])
            self._retired = []
            self._remote = None
        for provider in providers:
            provider.close()
