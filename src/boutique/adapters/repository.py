"""
Pattern Repository.

Chaque repository expose une collection du magasin sous forme
d'agrégat du domaine, pour un tenant donné. Les méthodes du pattern
(get, add) restent en anglais ; `enregistrer_modifications` réécrit
les agrégats effectivement modifiés pendant la transaction.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Callable

from boutique.adapters import codec
from boutique.adapters import store as magasin

logger = logging.getLogger(__name__)


class AbstractRepository(abc.ABC):
    """
    Interface abstraite du repository.

    Template Method : `get` et `add` tracent les agrégats dans `seen`,
    ce qui permet au Unit of Work de collecter leurs événements, puis
    délèguent aux méthodes `_get` / `_add` des sous-classes.
    """

    seen: set

    def __init__(self) -> None:
        self.seen = set()

    def add(self, agrégat: Any) -> None:
        self._add(agrégat)
        self.seen.add(agrégat)

    def get(self, tenant: str) -> Any:
        """Retourne l'agrégat du tenant ; une collection vide donne un agrégat vide."""
        agrégat = self._get(tenant)
        self.seen.add(agrégat)
        return agrégat

    @abc.abstractmethod
    def _add(self, agrégat: Any) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, tenant: str) -> Any:
        raise NotImplementedError

    @abc.abstractmethod
    def enregistrer_modifications(self, contrôle_de_version: bool = True) -> None:
        raise NotImplementedError


class StoreRepository(AbstractRepository):
    """
    Repository adossé à une collection du magasin.

    La version lue au chargement est retenue par agrégat : à l'écriture,
    elle sert de version attendue au compare-and-swap du magasin.
    """

    def __init__(
        self,
        store: magasin.AbstractStore,
        nom: str,
        décoder: Callable[[str, dict, int], Any],
        encoder: Callable[[Any], dict],
    ):
        super().__init__()
        self.store = store
        self.nom = nom
        self.décoder = décoder
        self.encoder = encoder
        self._chargés: dict[str, Any] = {}
        self._versions_lues: dict[int, int] = {}

    def _get(self, tenant: str) -> Any:
        if tenant in self._chargés:
            return self._chargés[tenant]
        données, version = self.store.load_collection(self.nom, tenant)
        agrégat = self.décoder(tenant, données, version)
        self._chargés[tenant] = agrégat
        self._versions_lues[id(agrégat)] = version
        return agrégat

    def _add(self, agrégat: Any) -> None:
        self._chargés[agrégat.tenant] = agrégat
        # Un agrégat ajouté crée la collection : rien ne doit exister avant lui
        self._versions_lues[id(agrégat)] = -1

    def enregistrer_modifications(self, contrôle_de_version: bool = True) -> None:
        for agrégat in self._chargés.values():
            version_lue = self._versions_lues[id(agrégat)]
            if agrégat.numéro_version == version_lue:
                continue
            version_attendue = max(version_lue, 0)
            self.store.save_collection(
                self.nom,
                agrégat.tenant,
                self.encoder(agrégat),
                version_attendue=version_attendue if contrôle_de_version else None,
            )
            agrégat.numéro_version = version_attendue + 1
            self._versions_lues[id(agrégat)] = agrégat.numéro_version
            logger.debug("%s/%s enregistré", agrégat.tenant, self.nom)


def inventaires(store: magasin.AbstractStore) -> StoreRepository:
    return StoreRepository(
        store,
        magasin.STOCK,
        codec.inventaire_depuis_collection,
        codec.inventaire_vers_collection,
    )


def commandes(store: magasin.AbstractStore) -> StoreRepository:
    return StoreRepository(
        store,
        magasin.COMMANDES,
        codec.registre_depuis_collection,
        codec.registre_vers_collection,
    )


def paramètres(store: magasin.AbstractStore) -> StoreRepository:
    return StoreRepository(
        store,
        magasin.PARAMÈTRES,
        codec.paramètres_depuis_collection,
        codec.paramètres_vers_collection,
    )
