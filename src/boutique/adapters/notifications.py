"""
Adapter pour les notifications.

Abstraction sur l'envoi de messages vers les salons et en message
privé, qui découple le cœur du transport concret (l'API Discord).
Le cœur ne regarde jamais le résultat d'un envoi : les event handlers
qui appellent cet adapter tournent en best-effort dans le message bus.
"""

from __future__ import annotations

import abc
import logging
from typing import Optional

import httpx

from boutique import config

logger = logging.getLogger(__name__)


class AbstractNotifications(abc.ABC):
    """Interface abstraite pour les notifications."""

    @abc.abstractmethod
    def publier(self, id_salon: str, message: str) -> Optional[str]:
        """Poste un message sur un salon et retourne son id."""
        raise NotImplementedError

    @abc.abstractmethod
    def message_privé(self, id_utilisateur: str, message: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def supprimer(self, id_salon: str, id_message: str) -> None:
        raise NotImplementedError


class DiscordNotifications(AbstractNotifications):
    """
    Implémentation concrète sur l'API REST de Discord.

    Un client httpx est ouvert par envoi ; `transport` permet d'injecter
    un httpx.MockTransport dans les tests.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.token = token if token is not None else config.get_discord_token()
        self.api_url = (api_url or config.get_discord_api_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else config.get_discord_timeout()
        self.transport = transport
        self.headers = {"Content-Type": "application/json"}
        if self.token:
            self.headers["Authorization"] = f"Bot {self.token}"

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.api_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    def publier(self, id_salon: str, message: str) -> Optional[str]:
        with self._client() as client:
            response = client.post(f"/channels/{id_salon}/messages", json={"content": message})
            response.raise_for_status()
            return response.json().get("id")

    def message_privé(self, id_utilisateur: str, message: str) -> None:
        with self._client() as client:
            response = client.post("/users/@me/channels", json={"recipient_id": id_utilisateur})
            response.raise_for_status()
            id_canal = response.json()["id"]
            response = client.post(f"/channels/{id_canal}/messages", json={"content": message})
            response.raise_for_status()

    def supprimer(self, id_salon: str, id_message: str) -> None:
        with self._client() as client:
            response = client.delete(f"/channels/{id_salon}/messages/{id_message}")
            if response.status_code == 404:
                logger.info("Message %s déjà supprimé du salon %s", id_message, id_salon)
                return
            response.raise_for_status()
