"""
Views (lecture) pour le pattern CQRS.

Fonctions de lecture pure : elles lisent les collections du magasin
et renvoient des dictionnaires prêts à sérialiser, sans jamais écrire.
Le balayage des retenues expirées, qui écrit, est une command que
l'appelant envoie avant une lecture sensible au disponible.
"""

from __future__ import annotations

from typing import Optional

from boutique.adapters import codec
from boutique.adapters import store as magasin
from boutique.domain import model
from boutique.service_layer import unit_of_work

LIMITE_HISTORIQUE = 10


def _inventaire(tenant: str, uow: unit_of_work.AbstractUnitOfWork) -> model.Inventaire:
    données, version = uow.store.load_collection(magasin.STOCK, tenant)
    return codec.inventaire_depuis_collection(tenant, données, version)


def _registre(tenant: str, uow: unit_of_work.AbstractUnitOfWork) -> model.RegistreCommandes:
    données, version = uow.store.load_collection(magasin.COMMANDES, tenant)
    return codec.registre_depuis_collection(tenant, données, version)


def _article(article: model.ArticleEnStock) -> dict:
    return {
        "id": article.id,
        "kind": article.genre.value,
        "name": article.nom,
        "price": str(article.prix),
        "available": article.quantité_disponible,
        "attributes": article.attributs,
    }


def _commande(commande: model.Commande) -> dict:
    return {
        "order_id": commande.id,
        "buyer_id": commande.id_acheteur,
        "item_id": commande.id_article,
        "item": commande.nom_article,
        "quantity": commande.quantité,
        "total": str(commande.prix_total),
        "payment_method": commande.moyen_paiement,
        "status": commande.statut.value,
        "created_at": commande.créée_le.isoformat(),
    }


def articles_disponibles(
    tenant: str,
    uow: unit_of_work.AbstractUnitOfWork,
    genre: Optional[model.Genre] = None,
) -> list[dict]:
    """Annonces achetables : disponible > 0, filtrées par genre si demandé."""
    inventaire = _inventaire(tenant, uow)
    return [
        _article(article)
        for article in inventaire.articles.values()
        if article.quantité_disponible > 0 and (genre is None or article.genre == genre)
    ]


def commandes_acheteur(
    tenant: str, id_acheteur: str, uow: unit_of_work.AbstractUnitOfWork
) -> list[dict]:
    """Les LIMITE_HISTORIQUE dernières commandes, de la plus récente à la plus ancienne."""
    commandes = sorted(
        _registre(tenant, uow).de_l_acheteur(id_acheteur), key=lambda c: c.créée_le
    )
    return [_commande(c) for c in reversed(commandes[-LIMITE_HISTORIQUE:])]


def toutes_les_commandes(tenant: str, uow: unit_of_work.AbstractUnitOfWork) -> list[dict]:
    return [_commande(c) for c in _registre(tenant, uow).commandes.values()]


def statut_commande(
    tenant: str, id_commande: str, uow: unit_of_work.AbstractUnitOfWork
) -> Optional[dict]:
    commande = _registre(tenant, uow).get(id_commande)
    return _commande(commande) if commande is not None else None


def paiement(
    tenant: str, id_commande: str, uow: unit_of_work.AbstractUnitOfWork
) -> Optional[dict]:
    """
    Récapitulatif de paiement d'une commande.

    Les instructions sont cherchées par le moyen déclaré en minuscules ;
    un moyen inconnu donne simplement `instructions: None`.
    """
    commande = _registre(tenant, uow).get(id_commande)
    if commande is None:
        return None
    données, version = uow.store.load_collection(magasin.PARAMÈTRES, tenant)
    paramètres = codec.paramètres_depuis_collection(tenant, données, version)
    return {
        **_commande(commande),
        "instructions": paramètres.instructions_paiement(commande.moyen_paiement),
    }
