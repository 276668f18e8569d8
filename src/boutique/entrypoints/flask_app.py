"""
Point d'entrée Flask.

Adapter mince appelé par le front Discord : il convertit les requêtes
HTTP en commands, les envoie au message bus et traduit les résultats
(ou les Refus) en réponses HTTP. Aucune logique métier ici.

Les routes d'administration exigent l'en-tête X-Admin-Token ; le cœur,
lui, n'effectue aucun contrôle d'autorisation.
"""

from __future__ import annotations

import functools
import hmac
from decimal import Decimal, InvalidOperation
from typing import Optional

from flask import Flask, jsonify, request

from boutique import config
from boutique.adapters.store import ConflitDeVersion, MagasinIndisponible
from boutique.domain import commands, model
from boutique.service_layer import bootstrap
from boutique.views import views

app = Flask(__name__)
bus = bootstrap.bootstrap()

CODES_REFUS = {
    model.SaisieInvalide: 400,
    model.StockInsuffisant: 400,
    model.LibérationInvalide: 400,
    model.ArticleIntrouvable: 404,
    model.CommandeIntrouvable: 404,
}


def réponse_refus(refus: model.Refus):
    return jsonify({"message": refus.message}), CODES_REFUS.get(type(refus), 400)


def admin_requis(vue):
    @functools.wraps(vue)
    def vérifiée(*args, **kwargs):
        attendu = config.get_admin_token()
        fourni = request.headers.get("X-Admin-Token", "")
        if attendu is None or not hmac.compare_digest(fourni, attendu):
            return jsonify({"message": "Réservé aux administrateurs"}), 403
        return vue(*args, **kwargs)

    return vérifiée


def _prix(valeur) -> Decimal:
    try:
        return Decimal(str(valeur))
    except InvalidOperation:
        return Decimal("-1")


def _entier(valeur) -> Optional[int]:
    if isinstance(valeur, bool):
        return None
    try:
        return int(valeur)
    except (TypeError, ValueError, OverflowError):
        return None


def _entiers_invalides(**valeurs):
    """Réponse 400 si l'un des champs n'est pas un entier, sinon None."""
    for nom, valeur in valeurs.items():
        if valeur is None:
            return réponse_refus(model.SaisieInvalide(f"{nom} doit être un entier"))
    return None


def _article_json(article: model.ArticleEnStock) -> dict:
    return {
        "id": article.id,
        "name": article.nom,
        "price": str(article.prix),
        "quantity": article.quantité,
        "reserved": article.réservé,
        "available": article.quantité_disponible,
    }


@app.errorhandler(MagasinIndisponible)
def magasin_indisponible(e):
    return jsonify({"message": "Magasin indisponible, réessayez plus tard"}), 503


@app.errorhandler(ConflitDeVersion)
def conflit_de_version(e):
    return jsonify({"message": "Trop d'écritures concurrentes, réessayez"}), 409


# --- Acheteurs ---


@app.route("/guilds/<tenant>/items", methods=["GET"])
def lister_articles(tenant: str):
    """
    GET /guilds/<tenant>/items?kind=consumable|one_off

    Balaye les retenues expirées puis liste les annonces disponibles.
    """
    genre = request.args.get("kind")
    try:
        genre = model.Genre(genre) if genre else None
    except ValueError:
        return jsonify({"message": f"Genre inconnu : {genre}"}), 400
    bus.handle(commands.BalayerRéservations(tenant=tenant))
    return jsonify(views.articles_disponibles(tenant, bus.uow, genre)), 200


@app.route("/guilds/<tenant>/orders", methods=["POST"])
def passer_commande(tenant: str):
    """
    POST /guilds/<tenant>/orders
    Body JSON : { buyer_id, item_id, quantity, payment_method, delivery_handle }
    """
    data = request.json or {}
    cmd = commands.PasserCommande(
        tenant=tenant,
        id_acheteur=str(data.get("buyer_id", "")),
        id_article=str(data.get("item_id", "")),
        quantité=data.get("quantity", 1),
        moyen_paiement=data.get("payment_method") or "",
        identifiant_livraison=data.get("delivery_handle") or "",
    )
    [résultat] = bus.handle(cmd)
    if model.est_un_refus(résultat):
        return réponse_refus(résultat)
    return jsonify({"order_id": résultat.id, "total": str(résultat.prix_total)}), 201


@app.route("/guilds/<tenant>/orders", methods=["GET"])
def mes_commandes(tenant: str):
    """
    GET /guilds/<tenant>/orders?buyer_id=…

    Les dix dernières commandes de l'acheteur, la plus récente en tête.
    """
    id_acheteur = request.args.get("buyer_id")
    if not id_acheteur:
        return jsonify({"message": "buyer_id obligatoire"}), 400
    return jsonify(views.commandes_acheteur(tenant, id_acheteur, bus.uow)), 200


def _commande_de_l_acheteur(tenant: str, id_commande: str, lecture):
    résultat = lecture(tenant, id_commande, bus.uow)
    if résultat is None:
        return jsonify({"message": f"Commande inconnue : {id_commande}"}), 404
    if résultat["buyer_id"] != request.args.get("buyer_id"):
        return jsonify({"message": "Vous ne pouvez consulter que vos propres commandes"}), 403
    return jsonify(résultat), 200


@app.route("/guilds/<tenant>/orders/<id_commande>", methods=["GET"])
def statut_commande(tenant: str, id_commande: str):
    return _commande_de_l_acheteur(tenant, id_commande, views.statut_commande)


@app.route("/guilds/<tenant>/orders/<id_commande>/checkout", methods=["GET"])
def paiement(tenant: str, id_commande: str):
    return _commande_de_l_acheteur(tenant, id_commande, views.paiement)


# --- Administrateurs ---


@app.route("/guilds/<tenant>/stock/consumables", methods=["POST"])
@admin_requis
def ajouter_consommable(tenant: str):
    """Body JSON : { amount, quantity, price, variant? }"""
    data = request.json or {}
    montant = _entier(data.get("amount", 0))
    quantité = _entier(data.get("quantity", 0))
    invalide = _entiers_invalides(amount=montant, quantity=quantité)
    if invalide is not None:
        return invalide
    [résultat] = bus.handle(
        commands.AjouterConsommable(
            tenant=tenant,
            montant=montant,
            quantité=quantité,
            prix=_prix(data.get("price")),
            variante=data.get("variant"),
        )
    )
    if model.est_un_refus(résultat):
        return réponse_refus(résultat)
    return jsonify(_article_json(résultat)), 201


@app.route("/guilds/<tenant>/stock/one-offs", methods=["POST"])
@admin_requis
def ajouter_unique(tenant: str):
    """Body JSON : { description, premium, summary, price }"""
    data = request.json or {}
    [résultat] = bus.handle(
        commands.AjouterUnique(
            tenant=tenant,
            description=data.get("description") or "",
            premium=bool(data.get("premium", False)),
            résumé=data.get("summary") or "",
            prix=_prix(data.get("price")),
        )
    )
    if model.est_un_refus(résultat):
        return réponse_refus(résultat)
    return jsonify(_article_json(résultat)), 201


@app.route("/guilds/<tenant>/stock/<id_article>/removal", methods=["POST"])
@admin_requis
def retirer_stock(tenant: str, id_article: str):
    data = request.json or {}
    quantité = _entier(data.get("quantity", 0))
    invalide = _entiers_invalides(quantity=quantité)
    if invalide is not None:
        return invalide
    [résultat] = bus.handle(
        commands.RetirerStock(tenant=tenant, id_article=id_article, quantité=quantité)
    )
    if model.est_un_refus(résultat):
        return réponse_refus(résultat)
    return jsonify(_article_json(résultat)), 200


@app.route("/guilds/<tenant>/stock/<id_article>/price", methods=["PUT"])
@admin_requis
def fixer_prix(tenant: str, id_article: str):
    data = request.json or {}
    [résultat] = bus.handle(
        commands.FixerPrix(tenant=tenant, id_article=id_article, prix=_prix(data.get("price")))
    )
    if model.est_un_refus(résultat):
        return réponse_refus(résultat)
    return jsonify(_article_json(résultat)), 200


@app.route("/guilds/<tenant>/stock/<id_article>/release", methods=["POST"])
@admin_requis
def libérer(tenant: str, id_article: str):
    data = request.json or {}
    quantité = _entier(data.get("quantity", 0))
    invalide = _entiers_invalides(quantity=quantité)
    if invalide is not None:
        return invalide
    [refus] = bus.handle(
        commands.Libérer(
            tenant=tenant,
            id_article=id_article,
            quantité=quantité,
            référence=data.get("order_id"),
        )
    )
    if refus is not None:
        return réponse_refus(refus)
    return "OK", 200


@app.route("/guilds/<tenant>/stock/<id_article>/listings", methods=["POST"])
@admin_requis
def publier_annonce(tenant: str, id_article: str):
    data = request.json or {}
    [résultat] = bus.handle(
        commands.PublierAnnonce(tenant=tenant, id_article=id_article, id_salon=str(data.get("channel_id", "")))
    )
    if model.est_un_refus(résultat):
        return réponse_refus(résultat)
    return jsonify({"message_id": résultat}), 201


@app.route("/guilds/<tenant>/orders/all", methods=["GET"])
@admin_requis
def toutes_les_commandes(tenant: str):
    return jsonify(views.toutes_les_commandes(tenant, bus.uow)), 200


@app.route("/guilds/<tenant>/orders/<id_commande>/delivery", methods=["POST"])
@admin_requis
def livrer(tenant: str, id_commande: str):
    """Body JSON : { credentials? } ; les identifiants ne sont jamais renvoyés."""
    data = request.json or {}
    secret = data.get("credentials")
    identifiants = model.Identifiants(secret) if secret else None
    [résultat] = bus.handle(
        commands.Livrer(tenant=tenant, id_commande=id_commande, identifiants=identifiants)
    )
    if model.est_un_refus(résultat):
        return réponse_refus(résultat)
    return jsonify({"order_id": résultat.id, "status": résultat.statut.value}), 200


@app.route("/guilds/<tenant>/settings/payment-methods/<moyen>", methods=["PUT"])
@admin_requis
def définir_moyen_paiement(tenant: str, moyen: str):
    data = request.json or {}
    [refus] = bus.handle(
        commands.DéfinirMoyenPaiement(tenant=tenant, moyen=moyen, instructions=data.get("details") or "")
    )
    if refus is not None:
        return réponse_refus(refus)
    return "OK", 200


@app.route("/guilds/<tenant>/settings/order-channel", methods=["PUT"])
@admin_requis
def définir_salon_commandes(tenant: str):
    data = request.json or {}
    bus.handle(commands.DéfinirSalonCommandes(tenant=tenant, id_salon=data.get("channel_id")))
    return "OK", 200
