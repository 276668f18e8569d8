"""
Bootstrap : assemblage de l'application (Composition Root).

Seul endroit qui choisit les implémentations concrètes : magasin SQL,
notifications Discord, index d'annonces en mémoire, horloge réelle.
Les tests injectent leurs fakes par les paramètres.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from boutique.adapters import annonces, notifications, store
from boutique.domain import commands, events, model
from boutique.service_layer import handlers, messagebus, unit_of_work


def maintenant_utc() -> datetime:
    return datetime.now(timezone.utc)


def bootstrap(
    start_store: bool = True,
    uow: Optional[unit_of_work.AbstractUnitOfWork] = None,
    notifications_adapter: Optional[notifications.AbstractNotifications] = None,
    index_annonces: Optional[annonces.AbstractIndexAnnonces] = None,
    horloge: Callable[[], datetime] = maintenant_utc,
    délai_expiration: timedelta = model.DÉLAI_EXPIRATION,
    **extra_dependencies: Any,
) -> messagebus.MessageBus:
    """
    Construit et retourne un MessageBus configuré.

    `start_store` crée la table des collections sur le magasin SQL
    par défaut ; il est ignoré quand un uow est fourni.
    """
    if uow is None:
        magasin = store.SqlAlchemyStore()
        if start_store:
            store.start_store(magasin.engine)
        uow = unit_of_work.StoreUnitOfWork(magasin)

    if notifications_adapter is None:
        notifications_adapter = notifications.DiscordNotifications()

    if index_annonces is None:
        index_annonces = annonces.IndexAnnoncesEnMémoire()

    dependencies: dict[str, Any] = {
        "notifications": notifications_adapter,
        "annonces": index_annonces,
        "horloge": horloge,
        "délai_expiration": délai_expiration,
        **extra_dependencies,
    }

    return messagebus.MessageBus(
        uow=uow,
        event_handlers=EVENT_HANDLERS,
        command_handlers=COMMAND_HANDLERS,
        dependencies=dependencies,
    )


# --- Routage des messages vers les handlers ---

EVENT_HANDLERS: dict[type[events.Event], list] = {
    events.CommandePassée: [handlers.notifier_commande_passée],
    events.CommandeLivrée: [handlers.notifier_commande_livrée],
    events.ArticleÉpuisé: [handlers.retirer_annonces],
    events.RéservationsExpirées: [handlers.journaliser_expiration],
}

COMMAND_HANDLERS: dict[type[commands.Command], Any] = {
    commands.AjouterConsommable: handlers.ajouter_consommable,
    commands.AjouterUnique: handlers.ajouter_unique,
    commands.RetirerStock: handlers.retirer_stock,
    commands.FixerPrix: handlers.fixer_prix,
    commands.Réserver: handlers.réserver,
    commands.Libérer: handlers.libérer,
    commands.BalayerRéservations: handlers.balayer_réservations,
    commands.PasserCommande: handlers.passer_commande,
    commands.Livrer: handlers.livrer,
    commands.DéfinirMoyenPaiement: handlers.définir_moyen_paiement,
    commands.DéfinirSalonCommandes: handlers.définir_salon_commandes,
    commands.PublierAnnonce: handlers.publier_annonce,
}
