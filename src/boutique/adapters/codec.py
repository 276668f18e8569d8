"""
Mapping entre les enregistrements persistés et les objets du domaine.

Le modèle de domaine ignore tout de la persistance : c'est ici qu'on
traduit un agrégat en dictionnaire JSON (et retour). Les clés persistées
restent en anglais, comme la forme d'enregistrement qu'utilisent déjà
les autres processus du bot ; les prix voyagent en chaînes décimales,
les instants en ISO 8601 UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from boutique.domain import model


def _instant(valeur: Optional[str]) -> Optional[datetime]:
    if valeur is None:
        return None
    instant = datetime.fromisoformat(valeur)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant


def _iso(instant: Optional[datetime]) -> Optional[str]:
    return instant.isoformat() if instant is not None else None


# --- Stock ---


def article_vers_enregistrement(article: model.ArticleEnStock) -> dict:
    return {
        "kind": article.genre.value,
        "name": article.nom,
        "price": str(article.prix),
        "quantity": article.quantité,
        "reserved": article.réservé,
        "reservationTimestamp": _iso(article.horodatage_réservation),
        "holds": [
            {"ref": r.référence, "qty": r.quantité, "placedAt": _iso(r.posée_le)}
            for r in article.réservations
        ],
        "attributes": article.attributs,
    }


def article_depuis_enregistrement(id_article: str, enregistrement: dict) -> model.ArticleEnStock:
    if "holds" in enregistrement:
        réservations = [
            model.Réservation(
                référence=r.get("ref"),
                quantité=int(r["qty"]),
                posée_le=_instant(r["placedAt"]),
            )
            for r in enregistrement["holds"]
        ]
    else:
        # Ancien format : une seule retenue agrégée datée par reservationTimestamp
        réservé = int(enregistrement.get("reserved") or 0)
        horodatage = _instant(enregistrement.get("reservationTimestamp"))
        réservations = []
        if réservé > 0:
            réservations.append(
                model.Réservation(
                    référence=None,
                    quantité=réservé,
                    posée_le=horodatage or datetime.min.replace(tzinfo=timezone.utc),
                )
            )
    genre = enregistrement.get("kind")
    if genre is None:
        genre = model.Genre.UNIQUE if id_article.startswith("account_") else model.Genre.CONSOMMABLE
    return model.ArticleEnStock(
        id=id_article,
        genre=model.Genre(genre),
        nom=enregistrement.get("name", id_article),
        prix=Decimal(str(enregistrement.get("price", "0"))),
        quantité=int(enregistrement.get("quantity", 0)),
        réservations=réservations,
        attributs=enregistrement.get("attributes") or {},
    )


def inventaire_vers_collection(inventaire: model.Inventaire) -> dict:
    return {
        id_article: article_vers_enregistrement(article)
        for id_article, article in inventaire.articles.items()
    }


def inventaire_depuis_collection(tenant: str, données: dict, version: int) -> model.Inventaire:
    return model.Inventaire(
        tenant=tenant,
        articles=[
            article_depuis_enregistrement(id_article, enregistrement)
            for id_article, enregistrement in données.items()
        ],
        numéro_version=version,
    )


# --- Commandes ---


def commande_vers_enregistrement(commande: model.Commande) -> dict:
    return {
        "buyerId": commande.id_acheteur,
        "itemId": commande.id_article,
        "itemName": commande.nom_article,
        "quantity": commande.quantité,
        "totalPrice": str(commande.prix_total),
        "paymentMethodClaim": commande.moyen_paiement,
        "deliveryHandle": commande.identifiant_livraison,
        "status": commande.statut.value,
        "createdAt": _iso(commande.créée_le),
        "deliveredAt": _iso(commande.livrée_le),
    }


def commande_depuis_enregistrement(id_commande: str, enregistrement: dict) -> model.Commande:
    return model.Commande(
        id=id_commande,
        id_acheteur=enregistrement["buyerId"],
        id_article=enregistrement["itemId"],
        nom_article=enregistrement.get("itemName", enregistrement["itemId"]),
        quantité=int(enregistrement["quantity"]),
        prix_total=Decimal(str(enregistrement["totalPrice"])),
        moyen_paiement=enregistrement.get("paymentMethodClaim", ""),
        identifiant_livraison=enregistrement.get("deliveryHandle", ""),
        créée_le=_instant(enregistrement["createdAt"]),
        statut=model.StatutCommande(enregistrement["status"]),
        livrée_le=_instant(enregistrement.get("deliveredAt")),
    )


def registre_vers_collection(registre: model.RegistreCommandes) -> dict:
    return {
        id_commande: commande_vers_enregistrement(commande)
        for id_commande, commande in registre.commandes.items()
    }


def registre_depuis_collection(
    tenant: str, données: dict, version: int
) -> model.RegistreCommandes:
    return model.RegistreCommandes(
        tenant=tenant,
        commandes=[
            commande_depuis_enregistrement(id_commande, enregistrement)
            for id_commande, enregistrement in données.items()
        ],
        numéro_version=version,
    )


# --- Paramètres ---


def paramètres_vers_collection(paramètres: model.Paramètres) -> dict:
    return {
        "paymentMethods": dict(paramètres.moyens_paiement),
        "orderChannel": paramètres.salon_commandes,
    }


def paramètres_depuis_collection(tenant: str, données: dict, version: int) -> model.Paramètres:
    if not données:
        return model.Paramètres(tenant=tenant, numéro_version=version)
    return model.Paramètres(
        tenant=tenant,
        moyens_paiement=dict(données.get("paymentMethods") or {}),
        salon_commandes=données.get("orderChannel"),
        numéro_version=version,
    )
