"""
Modèle de domaine de la boutique.

Le domaine modélise un registre de stock (Inventaire) partagé entre
acheteurs concurrents, des réservations temporaires posées sur ce stock,
et les commandes (Commande) qui en découlent.

Les trois agrégats (Inventaire, RegistreCommandes, Paramètres) sont
chacun la projection d'une collection entière du magasin pour un tenant
(une guilde). Ce sont les frontières de cohérence : toute mutation passe
par leurs méthodes, qui garantissent les invariants et émettent les
événements du domaine.

Les échecs métier attendus (article introuvable, stock insuffisant…)
sont retournés sous forme de Refus typés, jamais levés.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from boutique.domain import events

# Durée de vie d'une réservation non confirmée.
DÉLAI_EXPIRATION = timedelta(minutes=30)

CENTIME = Decimal("0.01")

MOYENS_PAIEMENT_PAR_DÉFAUT = {
    "paypal": "Send payment to: example@paypal.com",
    "cashapp": "Send payment to: $ExampleTag",
    "crypto": "Bitcoin address: 1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2",
}


class Genre(str, enum.Enum):
    CONSOMMABLE = "consumable"
    UNIQUE = "one_off"


class StatutCommande(str, enum.Enum):
    EN_ATTENTE_PAIEMENT = "Pending Payment"
    LIVRÉE = "Delivered"


# --- Refus (résultats d'échec typés) ---


@dataclass(frozen=True)
class Refus:
    """
    Classe de base des refus métier.

    Un refus est une valeur, pas une exception : il est retourné
    à l'appelant, qui le présente à l'utilisateur comme un rejet normal.
    """

    message: str

    def __bool__(self) -> bool:
        # Un refus n'est jamais un succès, même dans un `if résultat:`
        return False


class ArticleIntrouvable(Refus):
    pass


class StockInsuffisant(Refus):
    pass


class LibérationInvalide(Refus):
    pass


class SaisieInvalide(Refus):
    pass


class CommandeIntrouvable(Refus):
    pass


def est_un_refus(résultat: object) -> bool:
    return isinstance(résultat, Refus)


def prix_valide(prix: Decimal) -> bool:
    """Un prix est fini et positif ou nul ; NaN et Infinity sont refusés."""
    prix = Decimal(prix)
    return prix.is_finite() and prix >= 0


def calculer_prix_total(prix: Decimal, quantité: int) -> Decimal:
    """
    prix × quantité arrondi au centime, arrondi commercial (demi vers le haut).

    19.995 × 3 = 59.985 -> 59.99 (un arrondi bancaire donnerait 59.98).
    """
    return (Decimal(prix) * quantité).quantize(CENTIME, rounding=ROUND_HALF_UP)


# --- Stock ---


@dataclass(frozen=True)
class Réservation:
    """
    Value Object : une retenue de stock posée pour une commande en attente.

    `référence` est l'id de la commande qui a posé la retenue
    (None pour une retenue héritée d'un ancien enregistrement agrégé).
    """

    référence: Optional[str]
    quantité: int
    posée_le: datetime

    def est_expirée(self, maintenant: datetime, délai: timedelta) -> bool:
        return self.posée_le + délai < maintenant


class ArticleEnStock:
    """
    Entité représentant une annonce achetable.

    `quantité` est le total du pool, réservations comprises ;
    `réservé` est la somme des retenues en cours. L'invariant
    0 <= réservé <= quantité est garanti par toutes les méthodes,
    si bien que `quantité_disponible` n'est jamais négative.
    """

    def __init__(
        self,
        id: str,
        genre: Genre,
        nom: str,
        prix: Decimal,
        quantité: int = 0,
        réservations: Optional[list[Réservation]] = None,
        attributs: Optional[dict] = None,
    ):
        self.id = id
        self.genre = genre
        self.nom = nom
        self.prix = Decimal(prix)
        self.quantité = quantité
        self.réservations: list[Réservation] = list(réservations or [])
        self.attributs = dict(attributs or {})

    def __repr__(self) -> str:
        return f"<ArticleEnStock {self.id} {self.quantité_disponible}/{self.quantité}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ArticleEnStock):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def réservé(self) -> int:
        return sum(r.quantité for r in self.réservations)

    @property
    def horodatage_réservation(self) -> Optional[datetime]:
        """Début de la fenêtre de retenue courante : la retenue la plus récente."""
        if not self.réservations:
            return None
        return max(r.posée_le for r in self.réservations)

    @property
    def quantité_disponible(self) -> int:
        return self.quantité - self.réservé

    def peut_réserver(self, quantité: int) -> bool:
        return 0 < quantité <= self.quantité_disponible

    def réserver(
        self, quantité: int, référence: Optional[str], maintenant: datetime
    ) -> Union[Réservation, Refus]:
        if not self.peut_réserver(quantité):
            return StockInsuffisant(
                f"Stock insuffisant pour {self.id} :"
                f" demandé {quantité}, disponible {self.quantité_disponible}"
            )
        réservation = Réservation(référence=référence, quantité=quantité, posée_le=maintenant)
        self.réservations.append(réservation)
        return réservation

    def libérer(self, quantité: int, référence: Optional[str] = None) -> Optional[Refus]:
        """
        Rend `quantité` unités retenues au stock disponible.

        Avec une référence, seule la retenue de cette commande est entamée ;
        sans référence, les retenues les plus récentes partent en premier.
        L'état est inchangé en cas de refus.
        """
        candidates = [
            r for r in self.réservations
            if référence is None or r.référence == référence
        ]
        retenu = sum(r.quantité for r in candidates)
        if quantité <= 0 or quantité > retenu:
            return LibérationInvalide(
                f"Impossible de libérer {quantité} de {self.id} : {retenu} retenu(s)"
            )
        reste = quantité
        for réservation in sorted(candidates, key=lambda r: r.posée_le, reverse=True):
            if reste == 0:
                break
            self.réservations.remove(réservation)
            if réservation.quantité > reste:
                self.réservations.append(
                    Réservation(
                        référence=réservation.référence,
                        quantité=réservation.quantité - reste,
                        posée_le=réservation.posée_le,
                    )
                )
                reste = 0
            else:
                reste -= réservation.quantité
        return None

    def expirer(self, maintenant: datetime, délai: timedelta) -> int:
        """Retire les retenues expirées ; retourne le nombre d'unités rendues."""
        expirées = [r for r in self.réservations if r.est_expirée(maintenant, délai)]
        for réservation in expirées:
            self.réservations.remove(réservation)
        return sum(r.quantité for r in expirées)

    def consommer(self, quantité: int, référence: Optional[str]) -> list[Réservation]:
        """
        Déduit une vente livrée du stock réel.

        La retenue de la commande est consommée si elle existe encore
        (elle a pu expirer entre-temps). La quantité est plancher à 0.
        Si les retenues restantes dépassent alors la quantité, les plus
        récentes sont écartées ; elles sont retournées à l'appelant.
        """
        à_consommer = quantité
        for réservation in [r for r in self.réservations if r.référence == référence]:
            if à_consommer <= 0:
                break
            self.réservations.remove(réservation)
            if réservation.quantité > à_consommer:
                self.réservations.append(
                    Réservation(
                        référence=réservation.référence,
                        quantité=réservation.quantité - à_consommer,
                        posée_le=réservation.posée_le,
                    )
                )
            à_consommer -= réservation.quantité
        self.quantité = max(0, self.quantité - quantité)

        écartées: list[Réservation] = []
        for réservation in sorted(self.réservations, key=lambda r: r.posée_le, reverse=True):
            if self.réservé <= self.quantité:
                break
            self.réservations.remove(réservation)
            écartées.append(réservation)
        return écartées


class Inventaire:
    """
    Agrégat racine : le stock complet d'un tenant.

    Toute mutation de quantité, de retenue ou d'horodatage passe par
    cet agrégat. `numéro_version` est incrémenté à chaque mutation
    effective ; le repository s'en sert pour savoir quoi réécrire.
    """

    def __init__(
        self,
        tenant: str,
        articles: Optional[list[ArticleEnStock]] = None,
        numéro_version: int = 0,
    ):
        self.tenant = tenant
        self.articles: dict[str, ArticleEnStock] = {a.id: a for a in (articles or [])}
        self.numéro_version = numéro_version
        self.événements: list[events.Event] = []

    def get(self, id_article: str) -> Optional[ArticleEnStock]:
        return self.articles.get(id_article)

    def _signaler_si_épuisé(self, article: ArticleEnStock) -> None:
        if article.quantité == 0:
            self.événements.append(
                events.ArticleÉpuisé(tenant=self.tenant, id_article=article.id)
            )

    def réserver(
        self,
        id_article: str,
        quantité: int,
        référence: Optional[str],
        maintenant: datetime,
    ) -> Union[Réservation, Refus]:
        article = self.get(id_article)
        if article is None:
            return ArticleIntrouvable(f"Article inconnu : {id_article}")
        résultat = article.réserver(quantité, référence, maintenant)
        if not est_un_refus(résultat):
            self.numéro_version += 1
        return résultat

    def libérer(
        self, id_article: str, quantité: int, référence: Optional[str] = None
    ) -> Optional[Refus]:
        article = self.get(id_article)
        if article is None:
            return ArticleIntrouvable(f"Article inconnu : {id_article}")
        refus = article.libérer(quantité, référence)
        if refus is None:
            self.numéro_version += 1
        return refus

    def balayer_expirées(self, maintenant: datetime, délai: timedelta = DÉLAI_EXPIRATION) -> int:
        """
        Libère les retenues expirées de tous les articles.

        Retourne le nombre d'articles dont au moins une retenue a été libérée.
        La quantité n'est jamais touchée : elle n'avait pas été déduite.
        """
        libérés = 0
        for article in self.articles.values():
            rendues = article.expirer(maintenant, délai)
            if rendues:
                libérés += 1
                self.événements.append(
                    events.RéservationsExpirées(
                        tenant=self.tenant, id_article=article.id, quantité=rendues
                    )
                )
        if libérés:
            self.numéro_version += 1
        return libérés

    def ajouter_consommable(
        self,
        montant: int,
        quantité: int,
        prix: Decimal,
        variante: Optional[str] = None,
    ) -> Union[ArticleEnStock, Refus]:
        """
        Ajoute du stock à la famille `robux_<montant>[_<variante>]`.

        Les ajouts successifs sur une même famille s'accumulent ;
        le prix est remplacé à chaque ajout.
        """
        if montant <= 0 or quantité <= 0 or not prix_valide(prix):
            return SaisieInvalide("Montant, quantité et prix doivent être positifs")
        id_article = f"robux_{montant}" + (f"_{variante}" if variante else "")
        article = self.get(id_article)
        if article is None:
            nom = f"{montant} Robux" + (f" ({variante})" if variante else "")
            article = ArticleEnStock(
                id=id_article,
                genre=Genre.CONSOMMABLE,
                nom=nom,
                prix=Decimal(prix),
                attributs={"amount": montant, **({"variant": variante} if variante else {})},
            )
            self.articles[id_article] = article
        article.quantité += quantité
        article.prix = Decimal(prix)
        self.numéro_version += 1
        return article

    def ajouter_unique(
        self, description: str, premium: bool, résumé: str, prix: Decimal
    ) -> Union[ArticleEnStock, Refus]:
        if not description.strip() or not prix_valide(prix):
            return SaisieInvalide("Description obligatoire et prix positif")
        id_article = f"account_{uuid.uuid4().hex[:12]}"
        libellé = "Premium" if premium else "Regular"
        article = ArticleEnStock(
            id=id_article,
            genre=Genre.UNIQUE,
            nom=f"{libellé} Account - {description}",
            prix=Decimal(prix),
            quantité=1,
            attributs={"description": description, "premium": premium, "summary": résumé},
        )
        self.articles[id_article] = article
        self.numéro_version += 1
        return article

    def retirer(self, id_article: str, quantité: int) -> Union[ArticleEnStock, Refus]:
        """Retire du stock sans jamais descendre sous les unités retenues."""
        article = self.get(id_article)
        if article is None:
            return ArticleIntrouvable(f"Article inconnu : {id_article}")
        if quantité <= 0:
            return SaisieInvalide("La quantité à retirer doit être positive")
        article.quantité = max(article.réservé, article.quantité - quantité)
        self.numéro_version += 1
        self._signaler_si_épuisé(article)
        return article

    def fixer_prix(self, id_article: str, prix: Decimal) -> Union[ArticleEnStock, Refus]:
        article = self.get(id_article)
        if article is None:
            return ArticleIntrouvable(f"Article inconnu : {id_article}")
        if not prix_valide(prix):
            return SaisieInvalide("Le prix doit être un nombre fini, positif ou nul")
        article.prix = Decimal(prix)
        self.numéro_version += 1
        return article

    def livrer(self, id_article: str, quantité: int, référence: str) -> list[Réservation]:
        """
        Déduit une commande livrée. Sans effet si l'article a disparu.

        Retourne les retenues écartées pour préserver réservé <= quantité.
        """
        article = self.get(id_article)
        if article is None:
            return []
        écartées = article.consommer(quantité, référence)
        self.numéro_version += 1
        self._signaler_si_épuisé(article)
        return écartées


# --- Commandes ---


class Identifiants:
    """
    Conteneur mutable pour des identifiants à transmettre à l'acheteur.

    Le secret n'apparaît jamais dans le repr ; `effacer()` le détruit
    pour toutes les structures qui partagent ce conteneur.
    """

    def __init__(self, secret: str):
        self._secret: Optional[str] = secret

    def __repr__(self) -> str:
        return "<Identifiants effacés>" if self._secret is None else "<Identifiants ***>"

    @property
    def secret(self) -> Optional[str]:
        return self._secret

    @property
    def effacés(self) -> bool:
        return self._secret is None

    def effacer(self) -> None:
        self._secret = None


@dataclass
class PliConfidentiel:
    """Charge destinée au seul acheteur, en message privé."""

    id_acheteur: str
    résumé: dict
    identifiants: Optional[Identifiants] = None

    def effacer(self) -> None:
        if self.identifiants is not None:
            self.identifiants.effacer()


@dataclass
class Commande:
    id: str
    id_acheteur: str
    id_article: str
    nom_article: str
    quantité: int
    prix_total: Decimal
    moyen_paiement: str
    identifiant_livraison: str
    créée_le: datetime
    statut: StatutCommande = StatutCommande.EN_ATTENTE_PAIEMENT
    livrée_le: Optional[datetime] = None

    def résumé_public(self) -> dict:
        """Résumé diffusable sur un salon partagé : jamais d'identifiants."""
        return {
            "order_id": self.id,
            "buyer_id": self.id_acheteur,
            "item": self.nom_article,
            "quantity": self.quantité,
            "total": str(self.prix_total),
            "payment_method": self.moyen_paiement,
            "status": self.statut.value,
        }


def nouvel_id_commande() -> str:
    return uuid.uuid4().hex


class RegistreCommandes:
    """Agrégat racine : toutes les commandes d'un tenant. Rien n'y est jamais supprimé."""

    def __init__(
        self,
        tenant: str,
        commandes: Optional[list[Commande]] = None,
        numéro_version: int = 0,
    ):
        self.tenant = tenant
        self.commandes: dict[str, Commande] = {c.id: c for c in (commandes or [])}
        self.numéro_version = numéro_version
        self.événements: list[events.Event] = []

    def get(self, id_commande: str) -> Optional[Commande]:
        return self.commandes.get(id_commande)

    def ajouter(self, commande: Commande) -> None:
        self.commandes[commande.id] = commande
        self.numéro_version += 1
        self.événements.append(events.CommandePassée(tenant=self.tenant, commande=commande))

    def livrer(
        self,
        id_commande: str,
        maintenant: datetime,
        identifiants: Optional[Identifiants] = None,
    ) -> Union[Commande, Refus]:
        """
        Passe la commande à Livrée (ré-livrer une commande livrée ré-émet l'événement).

        Les identifiants, s'il y en a, ne sont placés que dans le pli
        confidentiel, jamais dans le résumé public.
        """
        commande = self.get(id_commande)
        if commande is None:
            return CommandeIntrouvable(f"Commande inconnue : {id_commande}")
        commande.statut = StatutCommande.LIVRÉE
        commande.livrée_le = maintenant
        self.numéro_version += 1
        pli = None
        if identifiants is not None:
            pli = PliConfidentiel(
                id_acheteur=commande.id_acheteur,
                résumé=commande.résumé_public(),
                identifiants=identifiants,
            )
        self.événements.append(
            events.CommandeLivrée(
                tenant=self.tenant,
                commande=commande,
                résumé=commande.résumé_public(),
                pli=pli,
            )
        )
        return commande

    def de_l_acheteur(self, id_acheteur: str) -> list[Commande]:
        return [c for c in self.commandes.values() if c.id_acheteur == id_acheteur]


# --- Paramètres ---


@dataclass(eq=False)
class Paramètres:
    """
    Agrégat racine : réglages d'un tenant.

    Les instructions de paiement sont indexées par le nom du moyen
    en minuscules ; le moyen saisi par l'acheteur n'est jamais validé
    contre cette liste, une recherche infructueuse ne renvoie rien.
    """

    tenant: str
    moyens_paiement: dict[str, str] = field(
        default_factory=lambda: dict(MOYENS_PAIEMENT_PAR_DÉFAUT)
    )
    salon_commandes: Optional[str] = None
    numéro_version: int = 0
    événements: list = field(default_factory=list)

    def instructions_paiement(self, moyen: str) -> Optional[str]:
        return self.moyens_paiement.get(moyen.strip().lower())

    def définir_moyen_paiement(self, moyen: str, instructions: str) -> Optional[Refus]:
        if not moyen.strip() or not instructions.strip():
            return SaisieInvalide("Moyen de paiement et instructions obligatoires")
        self.moyens_paiement[moyen.strip().lower()] = instructions
        self.numéro_version += 1
        return None

    def définir_salon_commandes(self, id_salon: Optional[str]) -> None:
        self.salon_commandes = id_salon or None
        self.numéro_version += 1
