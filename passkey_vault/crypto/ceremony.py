"""
Passkey Ceremonies - device side

Contains:
- DeviceAuthenticator: interface to the platform/roaming authenticator
- CeremonyState: idle -> awaiting_device -> verifying -> done | failed
- CeremonyRunner: runs one ceremony at a time with timeout and cancellation
- PasskeyClient: registration and authentication flows against the server

A ceremony suspends only while waiting on the device. Timeouts raise
CeremonyTimeoutError; a user or caller cancellation returns the runner to
IDLE and yields a cancelled outcome instead of raising.

PRF outputs are read from the device response and removed from it before
the response is submitted for verification, so they never reach the server.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from passkey_vault.core.exceptions import (
    CapabilityUnavailableError,
    CeremonyCancelledError,
    CeremonyInProgressError,
    CeremonyTimeoutError,
)
from passkey_vault.crypto.encoding import base64url_decode, base64url_encode
from passkey_vault.crypto.prf_key_derivation import get_prf_support_info

if TYPE_CHECKING:
    from passkey_vault.crypto.server_client import VaultServerClient

logger = logging.getLogger(__name__)

DEFAULT_CEREMONY_TIMEOUT_MS = 60000


class DeviceAuthenticator(ABC):
    """Authenticator the ceremonies talk to (browser bridge, roaming key, test double)"""

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def supports_prf(self) -> bool:
        ...

    @abstractmethod
    async def create(self, options: Dict[str, Any]) -> Dict[str, Any]:
        """Run a creation ceremony; returns the registration credential JSON."""

    @abstractmethod
    async def get(self, options: Dict[str, Any]) -> Dict[str, Any]:
        """Run an assertion ceremony; returns the authentication credential JSON."""


class CeremonyState(str, Enum):
    IDLE = "idle"
    AWAITING_DEVICE = "awaiting_device"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CeremonyOutcome:
    """Result of one ceremony run

    Attributes:
        state: DONE on success, IDLE when cancelled
        result: server verification result
        credential_id: id of the credential used or created
        prf_output: PRF extension output (device only)
        prf_enabled: whether the authenticator enabled PRF at registration
    """
    state: CeremonyState
    result: Optional[Dict[str, Any]] = None
    credential_id: Optional[str] = None
    prf_output: Optional[bytes] = field(default=None, repr=False)
    prf_enabled: bool = False
    response: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.state is CeremonyState.IDLE


def extract_prf_output(credential: Dict[str, Any]) -> Optional[bytes]:
    results = (
        credential.get("clientExtensionResults", {})
        .get("prf", {})
        .get("results", {})
    )
    first = results.get("first")
    return base64url_decode(first) if first else None


def strip_prf_results(credential: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a device response without PRF results, safe to submit."""
    cleaned = copy.deepcopy(credential)
    prf = cleaned.get("clientExtensionResults", {}).get("prf")
    if isinstance(prf, dict):
        prf.pop("results", None)
    return cleaned


def add_prf_eval(options: Dict[str, Any], salt: bytes) -> Dict[str, Any]:
    """Ask the authenticator to evaluate its PRF under ``salt``."""
    options = dict(options)
    extensions = dict(options.get("extensions") or {})
    extensions["prf"] = {"eval": {"first": base64url_encode(salt)}}
    options["extensions"] = extensions
    return options


class CeremonyRunner:
    """Serializes ceremonies for one session context and tracks their state."""

    def __init__(self, timeout_ms: int = DEFAULT_CEREMONY_TIMEOUT_MS):
        self.timeout_ms = timeout_ms
        self.state = CeremonyState.IDLE
        self._lock = asyncio.Lock()
        self._device_task: Optional[asyncio.Task] = None

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def run(
        self,
        device_call: Callable[[], Awaitable[Dict[str, Any]]],
        verify: Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]],
    ) -> CeremonyOutcome:
        """
        Run one ceremony.

        Raises:
            CeremonyInProgressError: another ceremony holds this runner
            CeremonyTimeoutError: the device did not answer in time
            VaultError: verification failed (state becomes FAILED)
        """
        if self._lock.locked():
            raise CeremonyInProgressError()

        async with self._lock:
            self.state = CeremonyState.AWAITING_DEVICE
            self._device_task = asyncio.ensure_future(device_call())
            try:
                done, _ = await asyncio.wait({self._device_task}, timeout=self.timeout_ms / 1000)
            except asyncio.CancelledError:
                self._device_task.cancel()
                self.state = CeremonyState.IDLE
                raise

            task, self._device_task = self._device_task, None
            if not done:
                task.cancel()
                self.state = CeremonyState.FAILED
                logger.warning("Passkey ceremony timed out", extra={"timeout_ms": self.timeout_ms})
                raise CeremonyTimeoutError(self.timeout_ms)

            if task.cancelled() or isinstance(task.exception(), CeremonyCancelledError):
                self.state = CeremonyState.IDLE
                logger.info("Passkey ceremony cancelled")
                return CeremonyOutcome(state=CeremonyState.IDLE)

            if task.exception() is not None:
                self.state = CeremonyState.FAILED
                raise task.exception()

            response = task.result()
            self.state = CeremonyState.VERIFYING
            try:
                result = await verify(response)
            except BaseException:
                self.state = CeremonyState.FAILED
                raise

            self.state = CeremonyState.DONE
            return CeremonyOutcome(
                state=CeremonyState.DONE,
                result=result,
                credential_id=response.get("id"),
                response=response,
            )

    def cancel(self) -> bool:
        """Abort the pending device interaction, if any."""
        if self._device_task is not None and not self._device_task.done():
            self._device_task.cancel()
            return True
        return False


class PasskeyClient:
    """Client side of passkey registration and authentication"""

    def __init__(
        self,
        authenticator: DeviceAuthenticator,
        server: "VaultServerClient",
        runner: Optional[CeremonyRunner] = None,
    ):
        self.authenticator = authenticator
        self.server = server
        self.runner = runner or CeremonyRunner()

    def check_capability(self) -> None:
        info = get_prf_support_info(self.authenticator)
        if not info.supported:
            raise CapabilityUnavailableError(info.reason or "Passkey encryption is not supported")

    async def register(self) -> CeremonyOutcome:
        """Create a new passkey with PRF enabled for the signed-in user."""
        self.check_capability()
        options = await self.server.registration_options()

        async def verify(credential: Dict[str, Any]) -> Dict[str, Any]:
            return await self.server.verify_registration(strip_prf_results(credential))

        outcome = await self.runner.run(lambda: self.authenticator.create(options), verify)
        if outcome.response is not None:
            prf = outcome.response.get("clientExtensionResults", {}).get("prf", {})
            outcome.prf_enabled = bool(prf.get("enabled"))
            outcome.response = None
        return outcome

    async def authenticate(
        self,
        prf_salt: Optional[bytes] = None,
        credential_ids: Optional[List[str]] = None,
    ) -> CeremonyOutcome:
        """
        Run an assertion; when ``prf_salt`` is given, also evaluate the PRF.

        ``credential_ids`` narrows the allow-list to those of the user's
        credentials (used right after registering a new device).

        The PRF output is returned on the outcome and stripped from the
        payload sent to the server.
        """
        self.check_capability()
        options = await self.server.authentication_options(credential_ids)
        if prf_salt is not None:
            options = add_prf_eval(options, prf_salt)

        async def verify(credential: Dict[str, Any]) -> Dict[str, Any]:
            return await self.server.verify_authentication(strip_prf_results(credential))

        outcome = await self.runner.run(lambda: self.authenticator.get(options), verify)
        if outcome.response is not None:
            outcome.prf_output = extract_prf_output(outcome.response)
            outcome.response = None
        return outcome
