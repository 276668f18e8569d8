"""
Pattern Unit of Work.

Le Unit of Work délimite une lecture-modification-écriture sur les
collections d'un tenant et collecte les événements des agrégats
modifiés. Il s'utilise comme context manager :

    with uow:
        inventaire = uow.inventaires.get(tenant)
        ...
        uow.commit()

Le magasin n'offre aucune transaction entre collections : le commit
écrit les commandes, puis le stock, puis les paramètres, chacun
indépendamment. Sans commit, rien n'est écrit.

Un même Unit of Work sert tous les threads du processus (le bus Flask
est construit une fois) : repositories et événements en attente sont
donc propres à chaque thread.
"""

from __future__ import annotations

import abc
import threading
from typing import Iterator

from boutique.adapters import repository
from boutique.adapters import store as magasin
from boutique.domain import events


class AbstractUnitOfWork(abc.ABC):
    """
    Interface abstraite du Unit of Work.

    Les événements ne sont récupérés qu'au commit : ceux d'une tentative
    abandonnée (refus, conflit de version) ne sortent jamais.
    """

    store: magasin.AbstractStore
    inventaires: repository.AbstractRepository
    commandes: repository.AbstractRepository
    paramètres: repository.AbstractRepository

    def __init__(self) -> None:
        self._local = threading.local()

    @property
    def _événements(self) -> list[events.Event]:
        if not hasattr(self._local, "événements"):
            self._local.événements = []
        return self._local.événements

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args: object) -> None:
        self.rollback()

    def commit(self) -> None:
        self._commit()
        for repo in (self.commandes, self.inventaires, self.paramètres):
            for agrégat in repo.seen:
                self._événements.extend(agrégat.événements)
                agrégat.événements.clear()

    def collect_new_events(self) -> Iterator[events.Event]:
        while self._événements:
            yield self._événements.pop(0)

    @abc.abstractmethod
    def _commit(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self) -> None:
        raise NotImplementedError


class StoreUnitOfWork(AbstractUnitOfWork):
    """
    Unit of Work sur le magasin clé-valeur.

    Chaque entrée dans le context manager repart de repositories neufs,
    donc d'une lecture fraîche. `contrôle_de_version=False` revient aux
    écritures aveugles (dernier écrivain gagnant).
    """

    def __init__(self, store: magasin.AbstractStore, contrôle_de_version: bool = True):
        super().__init__()
        self.store = store
        self.contrôle_de_version = contrôle_de_version

    def _repositories(self) -> dict[str, repository.StoreRepository]:
        if not hasattr(self._local, "repositories"):
            self._nouveaux_repositories()
        return self._local.repositories

    def _nouveaux_repositories(self) -> None:
        self._local.repositories = {
            "inventaires": repository.inventaires(self.store),
            "commandes": repository.commandes(self.store),
            "paramètres": repository.paramètres(self.store),
        }

    @property
    def inventaires(self) -> repository.StoreRepository:
        return self._repositories()["inventaires"]

    @property
    def commandes(self) -> repository.StoreRepository:
        return self._repositories()["commandes"]

    @property
    def paramètres(self) -> repository.StoreRepository:
        return self._repositories()["paramètres"]

    def __enter__(self) -> StoreUnitOfWork:
        self._nouveaux_repositories()
        return super().__enter__()

    def _commit(self) -> None:
        for repo in (self.commandes, self.inventaires, self.paramètres):
            repo.enregistrer_modifications(self.contrôle_de_version)

    def rollback(self) -> None:
        # Les modifications non écrites vivent seulement dans les agrégats
        # chargés : les oublier suffit.
        self._nouveaux_repositories()
