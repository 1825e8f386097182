from fastapi import Depends

from crosslist_dispatch.core.config import Settings, get_settings
from crosslist_dispatch.core.crypto import CredentialCipher, get_cipher
from crosslist_dispatch.core.security import AgentAuthenticator
from crosslist_dispatch.services.delivery import DeliveryCoordinator
from crosslist_dispatch.services.publishing import PublishingService
from crosslist_dispatch.services.repository import get_repository


def get_authenticator(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> AgentAuthenticator:
    return AgentAuthenticator(repository, settings)


def get_delivery_coordinator(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    authenticator: AgentAuthenticator = Depends(get_authenticator),
    cipher: CredentialCipher = Depends(get_cipher),
) -> DeliveryCoordinator:
    return DeliveryCoordinator(
        repository,
        authenticator,
        cipher,
        register_page_size=settings.register_page_size,
        poll_page_size=settings.poll_page_size,
        poll_window_seconds=settings.poll_window_seconds,
    )


def get_publishing_service(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> PublishingService:
    return PublishingService(repository, agent_active_window_seconds=settings.agent_active_window_seconds)
