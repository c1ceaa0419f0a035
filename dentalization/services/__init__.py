"""
Session Services Package.

Contains the Credential Store, the Request Pipeline, the Session Verifier
and the ``AuthService`` state machine that orchestrates them.

The ``create_services()`` factory wires every service together, returning
a typed dict that the application layer (CLI / screens) can consume
without knowing the internal dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

import httpx

from dentalization.auth import SessionManager
from dentalization.config import AppConfig
from dentalization.database import DatabaseManager
from dentalization.logger import StructuredLogger, get_logger
from dentalization.services.auth_api import AuthApi
from dentalization.services.auth_service import AuthService
from dentalization.services.biometric import BiometricProvider, UnavailableBiometricProvider
from dentalization.services.credential_store import CredentialStore
from dentalization.services.request_pipeline import RequestPipeline
from dentalization.services.session_verifier import SessionVerifier
from dentalization.services.token_provider import TokenProvider


class ServiceContainer(TypedDict):
    """Typed container for all session services."""

    # --- Persistence ---
    credential_store: CredentialStore
    token_provider: TokenProvider

    # --- Network ---
    request_pipeline: RequestPipeline
    auth_api: AuthApi

    # --- Orchestration ---
    session_verifier: SessionVerifier
    biometric_provider: BiometricProvider
    auth_service: AuthService


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    session: SessionManager,
    logger: Optional[StructuredLogger] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    biometric: Optional[BiometricProvider] = None,
) -> ServiceContainer:
    """
    Wire all session services together.

    This is the single composition root for the service layer.  The
    application entry-point calls this once at startup.

    Args:
        db: Initialised DatabaseManager whose schema is already in place.
        config: Application configuration (injected into services that need it).
        session: The shared ``SessionManager``.
        logger: Logger shared by the services; defaults to ``"services"``.
        transport: Optional ``httpx`` transport, e.g. a mock backend in tests.
        biometric: Platform biometric provider; defaults to an unavailable one.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = logger or get_logger("services")

    # ------------------------------------------------------------------
    # 1. Persistence
    # ------------------------------------------------------------------
    credential_store = CredentialStore(
        db=db,
        logger=logger,
        salt_path=config.salt_path,
        kdf_iterations=config.CREDENTIAL_KDF_ITERATIONS,
    )
    token_provider = TokenProvider(store=credential_store, logger=logger)

    # ------------------------------------------------------------------
    # 2. Network
    # ------------------------------------------------------------------
    request_pipeline = RequestPipeline(
        config=config,
        store=credential_store,
        token_provider=token_provider,
        logger=logger,
        transport=transport,
    )
    auth_api = AuthApi(pipeline=request_pipeline, logger=logger)

    # ------------------------------------------------------------------
    # 3. Orchestration
    # ------------------------------------------------------------------
    session_verifier = SessionVerifier(
        api=auth_api,
        store=credential_store,
        logger=logger,
        min_interval_s=config.VERIFY_MIN_INTERVAL_S,
        max_backoff_s=config.VERIFY_MAX_BACKOFF_S,
    )
    biometric_provider = biometric or UnavailableBiometricProvider()

    auth_service = AuthService(
        session=session,
        store=credential_store,
        token_provider=token_provider,
        pipeline=request_pipeline,
        api=auth_api,
        verifier=session_verifier,
        biometric=biometric_provider,
        config=config,
        logger=logger,
    )

    return ServiceContainer(
        credential_store=credential_store,
        token_provider=token_provider,
        request_pipeline=request_pipeline,
        auth_api=auth_api,
        session_verifier=session_verifier,
        biometric_provider=biometric_provider,
        auth_service=auth_service,
    )
