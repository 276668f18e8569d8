"""
Handlers pour les commands et events.

- Command handlers : exécutent une opération du registre de stock ou
  du cycle de vie des commandes. Ils retournent soit un résultat, soit
  un Refus typé ; seules les pannes d'infrastructure lèvent.
- Event handlers : notifient l'extérieur. Le message bus logge et
  avale leurs erreurs, ils ne peuvent donc rien défaire.

Chaque lecture-modification-écriture est rejouée sur une lecture
fraîche quand le magasin signale un conflit de version.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional, TypeVar, Union

from boutique.adapters.store import ConflitDeVersion
from boutique.domain import commands, events, model

if TYPE_CHECKING:
    from boutique.adapters.annonces import AbstractIndexAnnonces
    from boutique.adapters.notifications import AbstractNotifications
    from boutique.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

TENTATIVES_MAX = 3

T = TypeVar("T")


def réessayer_si_conflit(opération: Callable[[], T]) -> T:
    """Rejoue `opération` tant que le magasin signale un conflit, au plus TENTATIVES_MAX fois."""
    for tentative in range(1, TENTATIVES_MAX + 1):
        try:
            return opération()
        except ConflitDeVersion as e:
            if tentative == TENTATIVES_MAX:
                raise
            logger.warning("%s ; nouvelle tentative (%d/%d)", e, tentative + 1, TENTATIVES_MAX)
    raise AssertionError("inatteignable")


# --- Command Handlers : registre de stock ---


def ajouter_consommable(
    cmd: commands.AjouterConsommable,
    uow: AbstractUnitOfWork,
) -> Union[model.ArticleEnStock, model.Refus]:
    def opération():
        with uow:
            inventaire = uow.inventaires.get(cmd.tenant)
            résultat = inventaire.ajouter_consommable(
                cmd.montant, cmd.quantité, cmd.prix, cmd.variante
            )
            if not model.est_un_refus(résultat):
                uow.commit()
            return résultat

    résultat = réessayer_si_conflit(opération)
    if not model.est_un_refus(résultat):
        logger.info(
            "Stock %s/%s : +%d à %s", cmd.tenant, résultat.id, cmd.quantité, résultat.prix
        )
    return résultat


def ajouter_unique(
    cmd: commands.AjouterUnique,
    uow: AbstractUnitOfWork,
) -> Union[model.ArticleEnStock, model.Refus]:
    def opération():
        with uow:
            inventaire = uow.inventaires.get(cmd.tenant)
            résultat = inventaire.ajouter_unique(
                cmd.description, cmd.premium, cmd.résumé, cmd.prix
            )
            if not model.est_un_refus(résultat):
                uow.commit()
            return résultat

    return réessayer_si_conflit(opération)


def retirer_stock(
    cmd: commands.RetirerStock,
    uow: AbstractUnitOfWork,
) -> Union[model.ArticleEnStock, model.Refus]:
    def opération():
        with uow:
            résultat = uow.inventaires.get(cmd.tenant).retirer(cmd.id_article, cmd.quantité)
            if not model.est_un_refus(résultat):
                uow.commit()
            return résultat

    return réessayer_si_conflit(opération)


def fixer_prix(
    cmd: commands.FixerPrix,
    uow: AbstractUnitOfWork,
) -> Union[model.ArticleEnStock, model.Refus]:
    def opération():
        with uow:
            résultat = uow.inventaires.get(cmd.tenant).fixer_prix(cmd.id_article, cmd.prix)
            if not model.est_un_refus(résultat):
                uow.commit()
            return résultat

    return réessayer_si_conflit(opération)


def réserver(
    cmd: commands.Réserver,
    uow: AbstractUnitOfWork,
    horloge: Callable[[], datetime],
) -> Union[model.Réservation, model.Refus]:
    def opération():
        with uow:
            inventaire = uow.inventaires.get(cmd.tenant)
            résultat = inventaire.réserver(
                cmd.id_article, cmd.quantité, cmd.référence, horloge()
            )
            if not model.est_un_refus(résultat):
                uow.commit()
            return résultat

    return réessayer_si_conflit(opération)


def libérer(
    cmd: commands.Libérer,
    uow: AbstractUnitOfWork,
) -> Optional[model.Refus]:
    def opération():
        with uow:
            inventaire = uow.inventaires.get(cmd.tenant)
            refus = inventaire.libérer(cmd.id_article, cmd.quantité, cmd.référence)
            if refus is None:
                uow.commit()
            return refus

    return réessayer_si_conflit(opération)


def balayer_réservations(
    cmd: commands.BalayerRéservations,
    uow: AbstractUnitOfWork,
    horloge: Callable[[], datetime],
    délai_expiration: timedelta,
) -> int:
    """Libère les retenues expirées ; retourne le nombre d'articles concernés."""

    def opération():
        with uow:
            libérés = uow.inventaires.get(cmd.tenant).balayer_expirées(
                horloge(), délai_expiration
            )
            if libérés:
                uow.commit()
            return libérés

    return réessayer_si_conflit(opération)


# --- Command Handlers : cycle de vie des commandes ---


def _valider(cmd: commands.PasserCommande) -> Optional[model.Refus]:
    if not isinstance(cmd.quantité, int) or cmd.quantité < 1:
        return model.SaisieInvalide("La quantité doit être un entier supérieur ou égal à 1")
    if not cmd.moyen_paiement or not cmd.moyen_paiement.strip():
        return model.SaisieInvalide("Le moyen de paiement est obligatoire")
    if not cmd.identifiant_livraison or not cmd.identifiant_livraison.strip():
        return model.SaisieInvalide("Le lien ou nom d'utilisateur de livraison est obligatoire")
    return None


def passer_commande(
    cmd: commands.PasserCommande,
    uow: AbstractUnitOfWork,
    horloge: Callable[[], datetime],
    délai_expiration: timedelta,
) -> Union[model.Commande, model.Refus]:
    """
    Transforme une intention d'achat en commande en attente de paiement.

    Balayage des retenues expirées puis réservation, dans la même
    écriture du stock ; ensuite seulement, écriture de la commande.
    Si cette seconde écriture échoue, la retenue reste posée jusqu'à
    son expiration : l'incident est loggé et l'erreur remonte.
    """
    refus = _valider(cmd)
    if refus is not None:
        return refus

    id_commande = model.nouvel_id_commande()

    def réserver_stock():
        maintenant = horloge()
        with uow:
            inventaire = uow.inventaires.get(cmd.tenant)
            inventaire.balayer_expirées(maintenant, délai_expiration)
            résultat = inventaire.réserver(cmd.id_article, cmd.quantité, id_commande, maintenant)
            # Le balayage est écrit même si la réservation est refusée
            uow.commit()
            if model.est_un_refus(résultat):
                return résultat, None
            return résultat, inventaire.get(cmd.id_article)

    réservation, article = réessayer_si_conflit(réserver_stock)
    if model.est_un_refus(réservation):
        logger.info("Commande refusée sur %s/%s : %s", cmd.tenant, cmd.id_article, réservation.message)
        return réservation

    commande = model.Commande(
        id=id_commande,
        id_acheteur=cmd.id_acheteur,
        id_article=article.id,
        nom_article=article.nom,
        quantité=cmd.quantité,
        prix_total=model.calculer_prix_total(article.prix, cmd.quantité),
        moyen_paiement=cmd.moyen_paiement.strip(),
        identifiant_livraison=cmd.identifiant_livraison.strip(),
        créée_le=réservation.posée_le,
    )

    def enregistrer_commande():
        with uow:
            uow.commandes.get(cmd.tenant).ajouter(commande)
            uow.commit()

    try:
        réessayer_si_conflit(enregistrer_commande)
    except Exception:
        logger.error(
            "Réservation orpheline : %d x %s/%s retenu(s) pour la commande %s non enregistrée",
            cmd.quantité, cmd.tenant, cmd.id_article, id_commande,
        )
        raise

    logger.info(
        "Commande %s passée : %d x %s pour %s", commande.id, commande.quantité,
        commande.id_article, commande.prix_total,
    )
    return commande


def livrer(
    cmd: commands.Livrer,
    uow: AbstractUnitOfWork,
    horloge: Callable[[], datetime],
) -> Union[model.Commande, model.Refus]:
    """
    Passe une commande à Livrée puis déduit le stock réel.

    Deux écritures indépendantes : commandes d'abord, stock ensuite.
    Les identifiants ne sont transmis que pour un article unique ; dans
    tous les autres cas ils sont effacés sur-le-champ.
    """
    try:
        def marquer_livrée():
            with uow:
                inventaire = uow.inventaires.get(cmd.tenant)
                registre = uow.commandes.get(cmd.tenant)
                commande = registre.get(cmd.id_commande)
                if commande is None:
                    return model.CommandeIntrouvable(f"Commande inconnue : {cmd.id_commande}")
                article = inventaire.get(commande.id_article)
                transmettre = (
                    cmd.identifiants is not None
                    and article is not None
                    and article.genre == model.Genre.UNIQUE
                )
                résultat = registre.livrer(
                    cmd.id_commande,
                    horloge(),
                    identifiants=cmd.identifiants if transmettre else None,
                )
                uow.commit()
                return résultat, transmettre

        résultat = réessayer_si_conflit(marquer_livrée)
        if model.est_un_refus(résultat):
            if cmd.identifiants is not None:
                cmd.identifiants.effacer()
            return résultat
        commande, transmettre = résultat
        if cmd.identifiants is not None and not transmettre:
            cmd.identifiants.effacer()

        def déstocker():
            with uow:
                inventaire = uow.inventaires.get(cmd.tenant)
                écartées = inventaire.livrer(commande.id_article, commande.quantité, commande.id)
                uow.commit()
                return écartées

        écartées = réessayer_si_conflit(déstocker)
    except Exception:
        if cmd.identifiants is not None:
            cmd.identifiants.effacer()
        raise

    for réservation in écartées:
        logger.warning(
            "Retenue de %d sur %s/%s écartée (commande %s) : stock insuffisant après livraison",
            réservation.quantité, cmd.tenant, commande.id_article, réservation.référence,
        )
    logger.info("Commande %s livrée", commande.id)
    return commande


# --- Command Handlers : paramètres et annonces ---


def définir_moyen_paiement(
    cmd: commands.DéfinirMoyenPaiement,
    uow: AbstractUnitOfWork,
) -> Optional[model.Refus]:
    def opération():
        with uow:
            refus = uow.paramètres.get(cmd.tenant).définir_moyen_paiement(
                cmd.moyen, cmd.instructions
            )
            if refus is None:
                uow.commit()
            return refus

    return réessayer_si_conflit(opération)


def définir_salon_commandes(
    cmd: commands.DéfinirSalonCommandes,
    uow: AbstractUnitOfWork,
) -> None:
    def opération():
        with uow:
            uow.paramètres.get(cmd.tenant).définir_salon_commandes(cmd.id_salon)
            uow.commit()

    réessayer_si_conflit(opération)


def publier_annonce(
    cmd: commands.PublierAnnonce,
    uow: AbstractUnitOfWork,
    notifications: AbstractNotifications,
    annonces: AbstractIndexAnnonces,
) -> Union[str, model.Refus, None]:
    with uow:
        article = uow.inventaires.get(cmd.tenant).get(cmd.id_article)
    if article is None:
        return model.ArticleIntrouvable(f"Article inconnu : {cmd.id_article}")
    id_message = notifications.publier(
        cmd.id_salon,
        f"{article.nom} : {article.prix:.2f} ({article.quantité_disponible} disponible(s))"
        f" [{article.id}]",
    )
    if id_message:
        annonces.enregistrer(cmd.tenant, article.id, cmd.id_salon, id_message)
    return id_message


# --- Event Handlers ---


def notifier_commande_passée(
    event: events.CommandePassée,
    uow: AbstractUnitOfWork,
    notifications: AbstractNotifications,
) -> None:
    """Annonce la commande au salon des commandes (s'il est réglé) et confirme à l'acheteur."""
    commande = event.commande
    with uow:
        salon = uow.paramètres.get(event.tenant).salon_commandes
    if salon:
        notifications.publier(
            salon,
            f"Nouvelle commande {commande.id} : {commande.nom_article} x{commande.quantité},"
            f" total {commande.prix_total}, paiement {commande.moyen_paiement},"
            f" livraison {commande.identifiant_livraison}",
        )
    notifications.message_privé(
        commande.id_acheteur,
        f"Merci pour votre commande {commande.id} : {commande.nom_article}"
        f" x{commande.quantité}, total {commande.prix_total}.",
    )


def notifier_commande_livrée(
    event: events.CommandeLivrée,
    uow: AbstractUnitOfWork,
    notifications: AbstractNotifications,
) -> None:
    """
    Diffuse le résumé public et envoie le pli confidentiel à l'acheteur.

    Les identifiants sont effacés dès que l'envoi a été tenté,
    qu'il ait réussi ou non.
    """
    try:
        résumé = event.résumé
        with uow:
            salon = uow.paramètres.get(event.tenant).salon_commandes
        if salon:
            notifications.publier(
                salon, f"Commande {résumé['order_id']} livrée : {résumé['item']} x{résumé['quantity']}"
            )
        message = f"Votre commande {résumé['order_id']} a été livrée : {résumé['item']} x{résumé['quantity']}."
        if event.pli is not None and event.pli.identifiants is not None:
            secret = event.pli.identifiants.secret
            if secret:
                message += f"\nIdentifiants : {secret}"
        notifications.message_privé(event.commande.id_acheteur, message)
    finally:
        if event.pli is not None:
            event.pli.effacer()


def retirer_annonces(
    event: events.ArticleÉpuisé,
    notifications: AbstractNotifications,
    annonces: AbstractIndexAnnonces,
) -> None:
    for id_salon, id_message in annonces.retirer(event.tenant, event.id_article):
        notifications.supprimer(id_salon, id_message)
    logger.info("Annonces de %s/%s retirées", event.tenant, event.id_article)


def journaliser_expiration(event: events.RéservationsExpirées) -> None:
    logger.info(
        "%d unité(s) de %s/%s rendues au stock disponible (retenues expirées)",
        event.quantité, event.tenant, event.id_article,
    )
