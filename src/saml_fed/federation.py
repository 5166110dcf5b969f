"""Wiring of the federation core from configuration.

build_federation() initialises the XML security engine once and threads it
through every component that needs it.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .config.schema import Config
from .models.entity import Binding
from .models.protocol import LogoutRequest
from .saml.certificate_manager import CredentialStore, FileCredentialStore, certificate_to_base64
from .saml.engine import XMLSecurityEngine, initialize_engine
from .saml.entity_catalog import EntityCatalog
from .saml.ingester import MetadataIngester, RetryPolicy
from .saml.logout_service import LogoutService, SessionInvalidator
from .saml.messages import MessageFactory
from .saml.metadata import MetadataParser, create_idp_metadata, create_sp_metadata
from .saml.relay_state import RelayStateCache
from .saml.signer import SigningEngine
from .saml.validator import ValidatorBuilder
from .transport.http_client import ConnectionPool, ConnectionPoolConfig
from .transport.soap_client import SoapLogoutClient

logger = logging.getLogger(__name__)


def _log_session_invalidation(request: LogoutRequest) -> None:
    logger.info(
        f"No session store attached; logout for {request.name_id} "
        f"(sessions={','.join(request.session_indexes) or 'all'}) acknowledged"
    )


@dataclass
class Federation:
    """All core components for one local entity."""

    config: Config
    engine: XMLSecurityEngine
    catalog: EntityCatalog
    parser: MetadataParser
    ingester: MetadataIngester
    factory: MessageFactory
    credentials: CredentialStore
    signing: SigningEngine
    relay_states: RelayStateCache
    soap_client: SoapLogoutClient

    def validator_builder(self, binding: Binding) -> ValidatorBuilder:
        """A ValidatorBuilder preloaded with the configured validation settings."""
        validation = self.config.validation
        return (
            ValidatorBuilder(self.signing, clock=self.factory.clock)
            .binding(binding)
            .issue_timeout(timedelta(seconds=validation.issue_timeout))
            .jitter(timedelta(seconds=validation.jitter))
            .require_signed_post(validation.require_signed_post)
        )

    def logout_service(
        self, session_invalidator: Optional[SessionInvalidator] = None
    ) -> LogoutService:
        """Build a LogoutService for this entity."""
        validation = self.config.validation
        return LogoutService(
            entity_id=self.config.entity.entity_id,
            single_logout_url=self.config.entity.single_logout_url or "",
            catalog=self.catalog,
            factory=self.factory,
            signing=self.signing,
            relay_states=self.relay_states,
            session_invalidator=session_invalidator or _log_session_invalidation,
            soap_client=self.soap_client,
            issue_timeout=timedelta(seconds=validation.issue_timeout),
            jitter=timedelta(seconds=validation.jitter),
            require_signed_post=validation.require_signed_post,
        )

    def generate_metadata(self, role: str) -> str:
        """Generate this entity's metadata for role "idp" or "sp".

        Raises:
            ValueError: If role is not "idp" or "sp"
            CryptoFailure: If the credentials cannot be loaded
        """
        signing_cert = certificate_to_base64(self.credentials.get_signing_credential().certificate)
        encryption_cert = certificate_to_base64(
            self.credentials.get_encryption_credential().certificate
        )
        entity = self.config.entity
        if role == "idp":
            return create_idp_metadata(
                entity.entity_id,
                signing_cert,
                encryption_cert,
                single_logout_location=entity.single_logout_url,
            )
        if role == "sp":
            return create_sp_metadata(
                entity.entity_id,
                signing_cert,
                encryption_cert,
                single_logout_location=entity.single_logout_url,
                acs_post_location=entity.assertion_consumer_url,
            )
        raise ValueError(f"Invalid role: {role}. Must be one of: idp, sp")

    def shutdown(self) -> None:
        self.ingester.shutdown(wait=False)
        self.relay_states.stop()
        self.soap_client.pool.close()


def build_federation(
    config: Config,
    credentials: Optional[CredentialStore] = None,
    engine: Optional[XMLSecurityEngine] = None,
) -> Federation:
    """Build the federation core from configuration.

    Args:
        config: Loaded configuration
        credentials: Credential store; defaults to the configured files
        engine: Pre-initialised engine; initialised here when omitted

    Raises:
        ConfigurationError: If the engine cannot be initialised
    """
    engine = engine or initialize_engine()
    metadata = config.metadata

    catalog = EntityCatalog()
    parser = MetadataParser(engine, supported_bindings=metadata.supported_bindings)
    ingester = MetadataIngester.for_catalog(
        catalog,
        parser,
        pool=ConnectionPool(
            ConnectionPoolConfig(
                max_connections=metadata.max_workers,
                timeout_connect=metadata.timeout,
                timeout_read=metadata.timeout,
                verify_tls=metadata.verify_tls,
            )
        ),
        max_workers=metadata.max_workers,
        timeout=metadata.timeout,
        retry=RetryPolicy(
            max_attempts=metadata.max_retries,
            backoff_factor=metadata.backoff_factor,
            max_backoff=metadata.max_backoff,
        ),
        refresh_interval=metadata.refresh_interval,
    )

    if credentials is None:
        credentials = FileCredentialStore(config.signing_credential, config.encryption_credential)

    transport = config.transport
    soap_client = SoapLogoutClient(
        ConnectionPool(
            ConnectionPoolConfig(
                timeout_connect=transport.timeout_connect,
                timeout_read=transport.timeout_read,
                verify_tls=transport.verify_tls,
            )
        )
    )

    return Federation(
        config=config,
        engine=engine,
        catalog=catalog,
        parser=parser,
        ingester=ingester,
        factory=MessageFactory(engine),
        credentials=credentials,
        signing=SigningEngine(engine, credentials),
        relay_states=RelayStateCache(
            ttl=config.relay_state.ttl, sweep_interval=config.relay_state.sweep_interval
        ),
        soap_client=soap_client,
    )
