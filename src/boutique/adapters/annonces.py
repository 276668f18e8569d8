"""
Index des annonces publiées.

Retient, par article, les messages qui l'annoncent sur les salons,
pour pouvoir les retirer quand l'article est épuisé. C'est un
collaborateur remplaçable injecté dans le message bus, pas un état
global du processus.
"""

from __future__ import annotations

import abc
from collections import defaultdict


class AbstractIndexAnnonces(abc.ABC):
    @abc.abstractmethod
    def enregistrer(self, tenant: str, id_article: str, id_salon: str, id_message: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def retirer(self, tenant: str, id_article: str) -> list[tuple[str, str]]:
        """Oublie et retourne les (salon, message) annonçant l'article."""
        raise NotImplementedError


class IndexAnnoncesEnMémoire(AbstractIndexAnnonces):
    def __init__(self) -> None:
        self._messages: dict[tuple[str, str], list[tuple[str, str]]] = defaultdict(list)

    def enregistrer(self, tenant: str, id_article: str, id_salon: str, id_message: str) -> None:
        self._messages[(tenant, id_article)].append((id_salon, id_message))

    def retirer(self, tenant: str, id_article: str) -> list[tuple[str, str]]:
        return self._messages.pop((tenant, id_article), [])
