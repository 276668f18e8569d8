"""
Commands du domaine.

Une command est une intention adressée au système : elle a un seul
handler et peut être refusée. Toutes portent le tenant (la guilde)
dont elles modifient les collections.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from boutique.domain.model import Identifiants


class Command:
    """Classe de base pour toutes les commands."""
    pass


@dataclass(frozen=True)
class AjouterConsommable(Command):
    tenant: str
    montant: int
    quantité: int
    prix: Decimal
    variante: Optional[str] = None


@dataclass(frozen=True)
class AjouterUnique(Command):
    tenant: str
    description: str
    premium: bool
    résumé: str
    prix: Decimal


@dataclass(frozen=True)
class RetirerStock(Command):
    tenant: str
    id_article: str
    quantité: int


@dataclass(frozen=True)
class FixerPrix(Command):
    tenant: str
    id_article: str
    prix: Decimal


@dataclass(frozen=True)
class Réserver(Command):
    tenant: str
    id_article: str
    quantité: int
    référence: Optional[str] = None


@dataclass(frozen=True)
class Libérer(Command):
    tenant: str
    id_article: str
    quantité: int
    référence: Optional[str] = None


@dataclass(frozen=True)
class BalayerRéservations(Command):
    """Libère les retenues expirées avant une lecture sensible au disponible."""

    tenant: str


@dataclass(frozen=True)
class PasserCommande(Command):
    """Demande d'achat soumise par un acheteur via le formulaire."""

    tenant: str
    id_acheteur: str
    id_article: str
    quantité: int
    moyen_paiement: str
    identifiant_livraison: str


@dataclass(frozen=True)
class Livrer(Command):
    """
    Demande de livraison d'une commande par un administrateur.

    `identifiants` est un conteneur mutable : il est effacé une fois
    la notification à l'acheteur tentée.
    """

    tenant: str
    id_commande: str
    identifiants: Optional[Identifiants] = None


@dataclass(frozen=True)
class DéfinirMoyenPaiement(Command):
    tenant: str
    moyen: str
    instructions: str


@dataclass(frozen=True)
class DéfinirSalonCommandes(Command):
    tenant: str
    id_salon: Optional[str]


@dataclass(frozen=True)
class PublierAnnonce(Command):
    """Publie l'annonce d'un article sur un salon et la retient pour retrait ultérieur."""

    tenant: str
    id_article: str
    id_salon: str
