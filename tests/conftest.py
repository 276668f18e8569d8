"""
Configuration partagée pour les tests.

L'environnement est fixé avant tout import de l'application : le
module Flask construit son message bus à l'import, il doit tomber sur
un magasin SQLite en mémoire et un jeton d'administration connu.

Les fakes (magasin en mémoire, notifications capturées) sont exposés
par fixtures pour les tests unitaires et e2e.
"""

from __future__ import annotations

import copy
import os
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

import pytest

os.environ.setdefault("BOUTIQUE_STORE_URI", "sqlite://")
os.environ.setdefault("BOUTIQUE_ADMIN_TOKEN", "jeton-admin")

from boutique.adapters import annonces  # noqa: E402
from boutique.adapters.notifications import AbstractNotifications  # noqa: E402
from boutique.adapters.store import AbstractStore, ConflitDeVersion, MagasinIndisponible  # noqa: E402
from boutique.service_layer import bootstrap, messagebus, unit_of_work  # noqa: E402


class FakeStore(AbstractStore):
    """
    Magasin en mémoire, mêmes règles de version que le magasin SQL.

    `avant_écriture` est appelé juste avant chaque écriture : c'est là
    que les tests glissent une écriture concurrente. `en_panne` fait
    échouer les écritures des collections listées.
    """

    def __init__(self) -> None:
        self.collections: dict[tuple[str, str], tuple[dict, int]] = {}
        self.écritures: list[tuple[str, str]] = []
        self.avant_écriture: Optional[Callable[[str, str], None]] = None
        self.en_panne: set[str] = set()
        self._verrou = threading.Lock()

    def load_collection(self, nom: str, tenant: str) -> tuple[dict, int]:
        with self._verrou:
            données, version = self.collections.get((nom, tenant), ({}, 0))
            return copy.deepcopy(données), version

    def save_collection(self, nom, tenant, données, version_attendue=None) -> None:
        if self.avant_écriture is not None:
            crochet, self.avant_écriture = self.avant_écriture, None
            crochet(nom, tenant)
        if nom in self.en_panne:
            raise MagasinIndisponible(f"{tenant}/{nom} en panne")
        with self._verrou:
            _, version = self.collections.get((nom, tenant), ({}, 0))
            if version_attendue is not None and version != version_attendue:
                raise ConflitDeVersion(nom, tenant, version_attendue)
            self.collections[(nom, tenant)] = (copy.deepcopy(données), version + 1)
            self.écritures.append((nom, tenant))


class FakeNotifications(AbstractNotifications):
    """Capture les envois pour vérification ; `en_panne` fait échouer chaque envoi."""

    def __init__(self) -> None:
        self.publiés: list[tuple[str, str]] = []
        self.privés: list[tuple[str, str]] = []
        self.supprimés: list[tuple[str, str]] = []
        self.en_panne = False

    def _vérifier(self) -> None:
        if self.en_panne:
            raise RuntimeError("Discord injoignable")

    def publier(self, id_salon: str, message: str) -> Optional[str]:
        self._vérifier()
        self.publiés.append((id_salon, message))
        return f"msg-{len(self.publiés)}"

    def message_privé(self, id_utilisateur: str, message: str) -> None:
        self._vérifier()
        self.privés.append((id_utilisateur, message))

    def supprimer(self, id_salon: str, id_message: str) -> None:
        self._vérifier()
        self.supprimés.append((id_salon, id_message))


class Horloge:
    """Horloge réglable à la main."""

    def __init__(self, maintenant: datetime) -> None:
        self.maintenant = maintenant

    def __call__(self) -> datetime:
        return self.maintenant


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def notifications() -> FakeNotifications:
    return FakeNotifications()


@pytest.fixture
def horloge() -> Horloge:
    return Horloge(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_bus(store, notifications, horloge) -> Callable[..., messagebus.MessageBus]:
    """
    Fabrique de MessageBus câblés sur les fakes.

    Même wiring que la production ; plusieurs bus peuvent partager le
    même magasin pour simuler plusieurs processus du bot.
    """

    def fabriquer(contrôle_de_version: bool = True, **kwargs) -> messagebus.MessageBus:
        return bootstrap.bootstrap(
            start_store=False,
            uow=unit_of_work.StoreUnitOfWork(store, contrôle_de_version=contrôle_de_version),
            notifications_adapter=notifications,
            index_annonces=kwargs.pop("index_annonces", annonces.IndexAnnoncesEnMémoire()),
            horloge=horloge,
            **kwargs,
        )

    return fabriquer


@pytest.fixture
def bus(make_bus) -> messagebus.MessageBus:
    return make_bus()
