"""
Events du domaine.

Un event est un fait accompli, nommé au passé. Les agrégats les
accumulent dans leur liste `événements` ; le message bus les distribue
après le commit aux handlers qui notifient l'extérieur.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from boutique.domain.model import Commande, PliConfidentiel


class Event:
    """Classe de base pour tous les events du domaine."""
    pass


@dataclass(frozen=True)
class CommandePassée(Event):
    """Une commande vient d'être enregistrée en attente de paiement."""

    tenant: str
    commande: Commande


@dataclass(frozen=True)
class CommandeLivrée(Event):
    """
    Une commande est passée à Livrée.

    `résumé` peut être diffusé sur un salon partagé ; `pli` est réservé
    à l'acheteur et peut contenir des identifiants, effacés dès la
    notification tentée.
    """

    tenant: str
    commande: Commande
    résumé: dict
    pli: Optional[PliConfidentiel] = None


@dataclass(frozen=True)
class ArticleÉpuisé(Event):
    """La quantité d'un article est tombée à zéro : ses annonces doivent être retirées."""

    tenant: str
    id_article: str


@dataclass(frozen=True)
class RéservationsExpirées(Event):
    tenant: str
    id_article: str
    quantité: int
