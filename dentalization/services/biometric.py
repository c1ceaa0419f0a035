"""
Biometric Providers.

``AuthService`` depends only on the :class:`BiometricProvider` interface,
so a platform implementation can be swapped in without touching session
logic.

Variants
--------
- :class:`UnavailableBiometricProvider`: reports no capability and fails
  every assertion.  Used whenever the feature flag is off.
- :class:`PlatformBiometricProvider`: Face ID or Fingerprint, backed by a
  platform ``authenticator`` coroutine that returns ``True`` only for a
  successful local assertion.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from dentalization.exceptions import BiometricError
from dentalization.models.enums import BiometricType

Authenticator = Callable[[str], Awaitable[bool]]


class BiometricProvider(ABC):
    """Capability-checked access to a local biometric assertion."""

    @property
    @abstractmethod
    def biometric_type(self) -> Optional[BiometricType]:
        """The capability offered, or ``None`` when unavailable."""

    @abstractmethod
    async def is_available(self) -> bool:
        ...

    @abstractmethod
    async def authenticate(self, prompt: str) -> None:
        """Obtain a local assertion.

        Raises
        ------
        BiometricError
            If the assertion is refused, cancelled or unavailable.
        """

    @property
    def display_name(self) -> str:
        if self.biometric_type == BiometricType.FACE_ID:
            return "Face ID"
        if self.biometric_type == BiometricType.FINGERPRINT:
            return "Fingerprint"
        return "Biometric"


class UnavailableBiometricProvider(BiometricProvider):
    """Provider for builds and devices without biometric support."""

    @property
    def biometric_type(self) -> Optional[BiometricType]:
        return None

    async def is_available(self) -> bool:
        return False

    async def authenticate(self, prompt: str) -> None:
        raise BiometricError("Biometric authentication is not available.")


class PlatformBiometricProvider(BiometricProvider):
    """Face ID / Fingerprint provider over a platform authenticator.

    Parameters
    ----------
    biometric_type:
        Which capability the platform exposes.
    authenticator:
        Coroutine function taking the prompt text and returning ``True``
        for a successful assertion.
    """

    def __init__(self, biometric_type: BiometricType, authenticator: Authenticator) -> None:
        self._type: BiometricType = biometric_type
        self._authenticator: Authenticator = authenticator

    @property
    def biometric_type(self) -> Optional[BiometricType]:
        return self._type

    async def is_available(self) -> bool:
        return True

    async def authenticate(self, prompt: str) -> None:
        try:
            accepted = await self._authenticator(prompt)
        except BiometricError:
            raise
        except Exception as exc:
            raise BiometricError(f"{self.display_name} authentication failed: {exc}") from exc
        if not accepted:
            raise BiometricError(f"{self.display_name} authentication was not accepted.")
