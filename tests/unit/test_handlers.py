"""
Tests des handlers via le message bus.

Le magasin et les notifications sont des fakes (voir conftest.py) :
on teste les cas d'usage complets, de la command aux écritures dans
le magasin et aux notifications envoyées, sans I/O.
"""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from boutique.adapters import annonces, codec
from boutique.adapters.store import COMMANDES, STOCK, MagasinIndisponible
from boutique.domain import commands, model

TENANT = "guilde-1"


# --- Helpers ---


def ajouter_robux(bus, quantité=10, prix="9.99", montant=1000) -> str:
    [article] = bus.handle(
        commands.AjouterConsommable(TENANT, montant, quantité, Decimal(prix))
    )
    return article.id


def passer(bus, id_article, quantité=1, moyen="PayPal", livraison="https://roblox.com/gp/1", acheteur="acheteur-1"):
    [résultat] = bus.handle(
        commands.PasserCommande(TENANT, acheteur, id_article, quantité, moyen, livraison)
    )
    return résultat


def article_stocké(store, id_article) -> model.ArticleEnStock:
    données, _ = store.load_collection(STOCK, TENANT)
    return codec.article_depuis_enregistrement(id_article, données[id_article])


def commande_stockée(store, id_commande) -> model.Commande:
    données, _ = store.load_collection(COMMANDES, TENANT)
    return codec.commande_depuis_enregistrement(id_commande, données[id_commande])


# --- Registre de stock ---


class TestStock:
    def test_ajouter_du_consommable(self, bus, store):
        id_article = ajouter_robux(bus, quantité=5)
        ajouter_robux(bus, quantité=3, prix="8.00")

        article = article_stocké(store, id_article)
        assert article.quantité == 8
        assert article.prix == Decimal("8.00")

    def test_réserver_puis_refuser_le_surplus(self, bus, store):
        id_article = ajouter_robux(bus, quantité=5)

        [premier] = bus.handle(commands.Réserver(TENANT, id_article, 3))
        [second] = bus.handle(commands.Réserver(TENANT, id_article, 3))

        assert isinstance(premier, model.Réservation)
        assert isinstance(second, model.StockInsuffisant)
        assert article_stocké(store, id_article).réservé == 3

    @pytest.mark.parametrize("prix", ["Infinity", "NaN", "-0.01"])
    def test_prix_invalide_refusé_et_commande_toujours_possible(self, bus, store, prix):
        id_article = ajouter_robux(bus, quantité=5, prix="9.99")

        [refus] = bus.handle(commands.FixerPrix(TENANT, id_article, Decimal(prix)))
        commande = passer(bus, id_article, quantité=2)

        assert isinstance(refus, model.SaisieInvalide)
        assert article_stocké(store, id_article).prix == Decimal("9.99")
        assert commande.prix_total == Decimal("19.98")

    def test_réserver_un_article_inconnu(self, bus):
        [résultat] = bus.handle(commands.Réserver(TENANT, "inconnu", 1))
        assert isinstance(résultat, model.ArticleIntrouvable)

    def test_libération_invalide_laisse_l_état_intact(self, bus, store):
        id_article = ajouter_robux(bus, quantité=5)
        bus.handle(commands.Réserver(TENANT, id_article, 2))
        écritures_avant = len(store.écritures)

        [refus] = bus.handle(commands.Libérer(TENANT, id_article, 3))

        assert isinstance(refus, model.LibérationInvalide)
        assert article_stocké(store, id_article).réservé == 2
        assert len(store.écritures) == écritures_avant

    def test_balayage_libère_les_retenues_expirées(self, bus, store, horloge):
        id_article = ajouter_robux(bus, quantité=10)
        bus.handle(commands.Réserver(TENANT, id_article, 4))

        horloge.maintenant += timedelta(minutes=31)
        [libérés] = bus.handle(commands.BalayerRéservations(TENANT))

        article = article_stocké(store, id_article)
        assert libérés == 1
        assert article.réservé == 0
        assert article.quantité == 10

    def test_balayage_garde_les_retenues_récentes(self, bus, store, horloge):
        id_article = ajouter_robux(bus, quantité=10)
        bus.handle(commands.Réserver(TENANT, id_article, 4))

        horloge.maintenant += timedelta(minutes=5)
        [libérés] = bus.handle(commands.BalayerRéservations(TENANT))

        assert libérés == 0
        assert article_stocké(store, id_article).réservé == 4

    def test_délai_d_expiration_surchargeable(self, make_bus, store, horloge):
        bus = make_bus(délai_expiration=timedelta(minutes=1))
        id_article = ajouter_robux(bus, quantité=10)
        bus.handle(commands.Réserver(TENANT, id_article, 4))

        horloge.maintenant += timedelta(minutes=2)
        bus.handle(commands.BalayerRéservations(TENANT))

        assert article_stocké(store, id_article).réservé == 0

    def test_les_tenants_sont_isolés(self, bus, store):
        ajouter_robux(bus, quantité=5)
        données, _ = store.load_collection(STOCK, "autre-guilde")
        assert données == {}


# --- Passage de commande ---


class TestPasserCommande:
    def test_commande_en_attente_de_paiement(self, bus, store):
        id_article = ajouter_robux(bus, quantité=10, prix="19.995")

        commande = passer(bus, id_article, quantité=3)

        assert commande.statut == model.StatutCommande.EN_ATTENTE_PAIEMENT
        assert commande.prix_total == Decimal("59.99")
        stockée = commande_stockée(store, commande.id)
        assert stockée.prix_total == Decimal("59.99")
        assert stockée.moyen_paiement == "PayPal"
        article = article_stocké(store, id_article)
        assert article.réservé == 3
        assert article.quantité == 10
        assert article.réservations[0].référence == commande.id

    @pytest.mark.parametrize(
        "quantité, moyen, livraison",
        [(0, "PayPal", "lien"), (-2, "PayPal", "lien"), (1, "  ", "lien"), (1, "PayPal", "")],
    )
    def test_saisie_invalide(self, bus, store, quantité, moyen, livraison):
        id_article = ajouter_robux(bus, quantité=10)
        résultat = passer(bus, id_article, quantité=quantité, moyen=moyen, livraison=livraison)
        assert isinstance(résultat, model.SaisieInvalide)
        assert article_stocké(store, id_article).réservé == 0

    def test_article_inconnu(self, bus):
        assert isinstance(passer(bus, "robux_42"), model.ArticleIntrouvable)

    def test_stock_insuffisant(self, bus, store):
        id_article = ajouter_robux(bus, quantité=2)
        assert isinstance(passer(bus, id_article, quantité=3), model.StockInsuffisant)
        données, _ = store.load_collection(COMMANDES, TENANT)
        assert données == {}

    def test_balayage_avant_réservation(self, bus, store, horloge):
        id_article = ajouter_robux(bus, quantité=5)
        passer(bus, id_article, quantité=5)
        assert isinstance(passer(bus, id_article), model.StockInsuffisant)

        horloge.maintenant += timedelta(minutes=31)

        assert isinstance(passer(bus, id_article, quantité=5), model.Commande)

    def test_une_commande_abandonnée_reste_en_attente(self, bus, store, horloge):
        id_article = ajouter_robux(bus, quantité=5)
        commande = passer(bus, id_article)

        horloge.maintenant += timedelta(minutes=31)
        bus.handle(commands.BalayerRéservations(TENANT))

        assert commande_stockée(store, commande.id).statut == model.StatutCommande.EN_ATTENTE_PAIEMENT
        assert article_stocké(store, id_article).réservé == 0

    def test_notifie_le_salon_et_l_acheteur(self, bus, notifications):
        bus.handle(commands.DéfinirSalonCommandes(TENANT, "salon-commandes"))
        id_article = ajouter_robux(bus)

        commande = passer(bus, id_article)

        [(salon, message)] = notifications.publiés
        assert salon == "salon-commandes"
        assert commande.id in message
        assert notifications.privés[0][0] == "acheteur-1"

    def test_sans_salon_seul_l_acheteur_est_notifié(self, bus, notifications):
        id_article = ajouter_robux(bus)
        passer(bus, id_article)
        assert notifications.publiés == []
        assert len(notifications.privés) == 1

    def test_échec_de_notification_sans_effet_sur_la_commande(self, bus, store, notifications):
        id_article = ajouter_robux(bus)
        notifications.en_panne = True

        commande = passer(bus, id_article)

        assert isinstance(commande, model.Commande)
        assert commande_stockée(store, commande.id).statut == model.StatutCommande.EN_ATTENTE_PAIEMENT
        assert article_stocké(store, id_article).réservé == 1

    def test_échec_d_écriture_de_la_commande_laisse_une_retenue_orpheline(self, bus, store, caplog):
        id_article = ajouter_robux(bus, quantité=5)
        store.en_panne.add(COMMANDES)

        with caplog.at_level(logging.ERROR), pytest.raises(MagasinIndisponible):
            passer(bus, id_article, quantité=2)

        assert "Réservation orpheline" in caplog.text
        assert article_stocké(store, id_article).réservé == 2

    def test_retenue_orpheline_récupérée_par_le_balayage(self, bus, store, horloge):
        id_article = ajouter_robux(bus, quantité=5)
        store.en_panne.add(COMMANDES)
        with pytest.raises(MagasinIndisponible):
            passer(bus, id_article, quantité=2)
        store.en_panne.clear()

        horloge.maintenant += timedelta(minutes=31)
        bus.handle(commands.BalayerRéservations(TENANT))

        assert article_stocké(store, id_article).quantité_disponible == 5


# --- Concurrence ---


class TestConcurrence:
    def test_réservations_concurrentes_la_seconde_est_refusée(self, make_bus, store):
        bus_a = make_bus()
        bus_b = make_bus()
        id_article = ajouter_robux(bus_a, quantité=5)

        # B réserve pendant que A a déjà lu le stock et s'apprête à écrire
        résultats_b = []
        store.avant_écriture = lambda nom, tenant: résultats_b.extend(
            bus_b.handle(commands.Réserver(TENANT, id_article, 3))
        )
        [résultat_a] = bus_a.handle(commands.Réserver(TENANT, id_article, 3))

        assert isinstance(résultats_b[0], model.Réservation)
        assert isinstance(résultat_a, model.StockInsuffisant)
        assert article_stocké(store, id_article).réservé == 3

    def test_sans_contrôle_de_version_la_course_survend(self, make_bus, store):
        bus_a = make_bus(contrôle_de_version=False)
        bus_b = make_bus(contrôle_de_version=False)
        id_article = ajouter_robux(bus_a, quantité=5)

        résultats_b = []
        store.avant_écriture = lambda nom, tenant: résultats_b.extend(
            bus_b.handle(commands.Réserver(TENANT, id_article, 3))
        )
        [résultat_a] = bus_a.handle(commands.Réserver(TENANT, id_article, 3))

        # Les deux réussissent : la mise à jour de B est perdue
        assert isinstance(résultats_b[0], model.Réservation)
        assert isinstance(résultat_a, model.Réservation)
        assert article_stocké(store, id_article).réservé == 3

    def test_commandes_concurrentes_sur_le_même_article(self, make_bus, store):
        bus_a = make_bus()
        bus_b = make_bus()
        id_article = ajouter_robux(bus_a, quantité=5)

        résultats_b = []
        store.avant_écriture = lambda nom, tenant: résultats_b.append(
            passer(bus_b, id_article, quantité=3, acheteur="acheteur-2")
        )
        résultat_a = passer(bus_a, id_article, quantité=3)

        assert isinstance(résultats_b[0], model.Commande)
        assert isinstance(résultat_a, model.StockInsuffisant)
        données, _ = store.load_collection(COMMANDES, TENANT)
        assert list(données) == [résultats_b[0].id]

    def test_deux_threads_sur_le_même_bus(self, bus, store, monkeypatch):
        id_article = ajouter_robux(bus, quantité=5)

        # Les deux threads lisent le stock avant que l'un d'eux n'écrive
        barrière = threading.Barrier(2, timeout=5)
        lectures = itertools.count()
        lecture_réelle = store.load_collection

        def lecture_synchronisée(nom, tenant):
            résultat = lecture_réelle(nom, tenant)
            if nom == STOCK and next(lectures) < 2:
                barrière.wait()
            return résultat

        monkeypatch.setattr(store, "load_collection", lecture_synchronisée)
        résultats = []

        def réserver():
            résultats.extend(bus.handle(commands.Réserver(TENANT, id_article, 3)))

        threads = [threading.Thread(target=réserver) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sorted(type(r).__name__ for r in résultats) == ["Réservation", "StockInsuffisant"]
        assert article_stocké(store, id_article).réservé == 3


# --- Livraison ---


class TestLivrer:
    def test_livraison_déduit_le_stock_et_libère_la_retenue(self, bus, store):
        id_article = ajouter_robux(bus, quantité=10)
        commande = passer(bus, id_article, quantité=2)

        [livrée] = bus.handle(commands.Livrer(TENANT, commande.id))

        assert livrée.statut == model.StatutCommande.LIVRÉE
        article = article_stocké(store, id_article)
        assert article.quantité == 8
        assert article.réservé == 0
        assert commande_stockée(store, commande.id).statut == model.StatutCommande.LIVRÉE

    def test_commande_inconnue(self, bus):
        [résultat] = bus.handle(commands.Livrer(TENANT, "inconnue"))
        assert isinstance(résultat, model.CommandeIntrouvable)

    def test_commande_inconnue_efface_les_identifiants(self, bus):
        identifiants = model.Identifiants("user:secret")
        bus.handle(commands.Livrer(TENANT, "inconnue", identifiants))
        assert identifiants.effacés

    def test_livraison_après_expiration(self, bus, store, horloge):
        id_article = ajouter_robux(bus, quantité=10)
        commande = passer(bus, id_article, quantité=2)
        horloge.maintenant += timedelta(minutes=31)
        bus.handle(commands.BalayerRéservations(TENANT))

        bus.handle(commands.Livrer(TENANT, commande.id))

        article = article_stocké(store, id_article)
        assert article.quantité == 8
        assert article.réservé == 0

    def test_relivrer_déduit_une_seconde_fois(self, bus, store):
        id_article = ajouter_robux(bus, quantité=10)
        commande = passer(bus, id_article, quantité=2)

        bus.handle(commands.Livrer(TENANT, commande.id))
        bus.handle(commands.Livrer(TENANT, commande.id))

        article = article_stocké(store, id_article)
        assert article.quantité == 6
        assert article.réservé == 0

    def test_identifiants_transmis_en_privé_pour_un_compte(self, bus, notifications):
        bus.handle(commands.DéfinirSalonCommandes(TENANT, "salon-commandes"))
        [compte] = bus.handle(
            commands.AjouterUnique(TENANT, "OG 2012", True, "Beaucoup d'objets", Decimal("25"))
        )
        commande = passer(bus, compte.id, livraison="pseudo_roblox")
        identifiants = model.Identifiants("user:motdepasse")

        bus.handle(commands.Livrer(TENANT, commande.id, identifiants))

        dm_livraison = notifications.privés[-1]
        assert dm_livraison[0] == "acheteur-1"
        assert "user:motdepasse" in dm_livraison[1]
        assert all("motdepasse" not in message for _, message in notifications.publiés)
        assert identifiants.effacés

    def test_identifiants_effacés_même_si_la_notification_échoue(self, bus, notifications):
        [compte] = bus.handle(
            commands.AjouterUnique(TENANT, "OG 2012", False, "résumé", Decimal("25"))
        )
        commande = passer(bus, compte.id, livraison="pseudo_roblox")
        notifications.en_panne = True
        identifiants = model.Identifiants("user:motdepasse")

        [livrée] = bus.handle(commands.Livrer(TENANT, commande.id, identifiants))

        assert livrée.statut == model.StatutCommande.LIVRÉE
        assert identifiants.effacés

    def test_identifiants_non_transmis_pour_un_consommable(self, bus, notifications):
        id_article = ajouter_robux(bus)
        commande = passer(bus, id_article)
        identifiants = model.Identifiants("user:motdepasse")

        bus.handle(commands.Livrer(TENANT, commande.id, identifiants))

        assert identifiants.effacés
        assert all("motdepasse" not in message for _, message in notifications.privés)

    def test_le_compte_vendu_est_retiré_des_annonces(self, make_bus, store, notifications):
        index = annonces.IndexAnnoncesEnMémoire()
        bus = make_bus(index_annonces=index)
        [compte] = bus.handle(
            commands.AjouterUnique(TENANT, "OG 2012", True, "résumé", Decimal("25"))
        )
        [id_message] = bus.handle(commands.PublierAnnonce(TENANT, compte.id, "salon-boutique"))
        commande = passer(bus, compte.id, livraison="pseudo_roblox")

        bus.handle(commands.Livrer(TENANT, commande.id))

        assert article_stocké(store, compte.id).quantité == 0
        assert notifications.supprimés == [("salon-boutique", id_message)]
        assert index.retirer(TENANT, compte.id) == []

    def test_échec_d_écriture_du_stock_après_livraison(self, bus, store, notifications):
        id_article = ajouter_robux(bus, quantité=10)
        commande = passer(bus, id_article, quantité=2)
        store.en_panne.add(STOCK)

        with pytest.raises(MagasinIndisponible):
            bus.handle(commands.Livrer(TENANT, commande.id))

        # Écritures indépendantes : la commande est livrée, le stock inchangé
        assert commande_stockée(store, commande.id).statut == model.StatutCommande.LIVRÉE
        assert article_stocké(store, id_article).quantité == 10
        # La livraison écrite est notifiée avant que l'erreur remonte
        assert "a été livrée" in notifications.privés[-1][1]
        privés_avant = list(notifications.privés)

        store.en_panne.clear()
        bus.handle(commands.DéfinirMoyenPaiement("autre-guilde", "GCash", "0917 000 0000"))

        assert notifications.privés == privés_avant


# --- Paramètres et annonces ---


class TestParamètres:
    def test_définir_un_moyen_de_paiement(self, bus, store):
        assert bus.handle(commands.DéfinirMoyenPaiement(TENANT, "GCash", "0917 000 0000")) == [None]
        [refus] = bus.handle(commands.DéfinirMoyenPaiement(TENANT, "", "x"))
        assert isinstance(refus, model.SaisieInvalide)

    def test_publier_l_annonce_d_un_article_inconnu(self, bus, notifications):
        [résultat] = bus.handle(commands.PublierAnnonce(TENANT, "inconnu", "salon"))
        assert isinstance(résultat, model.ArticleIntrouvable)
        assert notifications.publiés == []

    def test_retirer_tout_le_stock_retire_les_annonces(self, bus, notifications):
        id_article = ajouter_robux(bus, quantité=3)
        [id_message] = bus.handle(commands.PublierAnnonce(TENANT, id_article, "salon-boutique"))

        bus.handle(commands.RetirerStock(TENANT, id_article, 3))

        assert notifications.supprimés == [("salon-boutique", id_message)]
