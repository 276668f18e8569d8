"""
Adapter du magasin clé-valeur distant.

Le magasin ne connaît que des collections entières (stock, commandes,
paramètres, tickets) rangées par tenant : on charge la collection,
on la modifie en mémoire, on la réécrit d'un bloc. Il n'existe ni
transaction entre collections ni mise à jour partielle d'une clé.

Pour fermer la course lecture-modification-écriture, chaque collection
porte un numéro de version : l'écriture est un compare-and-swap qui
échoue (ConflitDeVersion) si quelqu'un a écrit entre-temps.
"""

from __future__ import annotations

import abc
import logging
from typing import Optional

from sqlalchemy import (
    JSON,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from boutique import config

logger = logging.getLogger(__name__)

STOCK = "stock"
COMMANDES = "orders"
PARAMÈTRES = "settings"
TICKETS = "tickets"

COLLECTIONS = (STOCK, COMMANDES, PARAMÈTRES, TICKETS)


class MagasinIndisponible(Exception):
    """Le magasin distant n'a pas répondu ; l'opération en cours échoue sans réessai."""
    pass


class ConflitDeVersion(Exception):
    """La collection a été réécrite depuis sa lecture."""

    def __init__(self, nom: str, tenant: str, version_attendue: Optional[int]):
        super().__init__(
            f"Conflit d'écriture sur {tenant}/{nom} (version attendue {version_attendue})"
        )
        self.nom = nom
        self.tenant = tenant
        self.version_attendue = version_attendue


class AbstractStore(abc.ABC):
    """
    Interface du magasin.

    load_collection retourne (données, version) ; une collection jamais
    écrite vaut ({}, 0). save_collection avec `version_attendue=None`
    écrit à l'aveugle (dernier écrivain gagnant).
    """

    @abc.abstractmethod
    def load_collection(self, nom: str, tenant: str) -> tuple[dict, int]:
        raise NotImplementedError

    @abc.abstractmethod
    def save_collection(
        self,
        nom: str,
        tenant: str,
        données: dict,
        version_attendue: Optional[int] = None,
    ) -> None:
        raise NotImplementedError


metadata = MetaData()

collections = Table(
    "collections",
    metadata,
    Column("tenant", String(64), primary_key=True),
    Column("nom", String(32), primary_key=True),
    Column("donnees", JSON, nullable=False),
    Column("version", Integer, nullable=False, server_default="0"),
)


def start_store(engine: Engine) -> None:
    """Crée la table des collections si elle n'existe pas."""
    metadata.create_all(engine)


class SqlAlchemyStore(AbstractStore):
    """Magasin sur une table SQL de documents JSON, une ligne par (tenant, collection)."""

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine if engine is not None else create_engine(config.get_store_uri())

    def _clé(self, nom: str, tenant: str):
        return (collections.c.tenant == tenant) & (collections.c.nom == nom)

    def load_collection(self, nom: str, tenant: str) -> tuple[dict, int]:
        try:
            with self.engine.connect() as conn:
                ligne = conn.execute(
                    select(collections.c.donnees, collections.c.version)
                    .where(self._clé(nom, tenant))
                ).first()
        except OperationalError as e:
            raise MagasinIndisponible(f"Lecture de {tenant}/{nom} impossible") from e
        if ligne is None:
            return {}, 0
        return dict(ligne.donnees), ligne.version

    def save_collection(
        self,
        nom: str,
        tenant: str,
        données: dict,
        version_attendue: Optional[int] = None,
    ) -> None:
        try:
            with self.engine.begin() as conn:
                if version_attendue is None:
                    self._écrire_à_l_aveugle(conn, nom, tenant, données)
                elif version_attendue == 0:
                    conn.execute(
                        insert(collections).values(
                            tenant=tenant, nom=nom, donnees=données, version=1
                        )
                    )
                else:
                    résultat = conn.execute(
                        update(collections)
                        .where(self._clé(nom, tenant))
                        .where(collections.c.version == version_attendue)
                        .values(donnees=données, version=version_attendue + 1)
                    )
                    if résultat.rowcount != 1:
                        raise ConflitDeVersion(nom, tenant, version_attendue)
        except IntegrityError as e:
            # Une autre écriture a créé la collection avant nous
            raise ConflitDeVersion(nom, tenant, version_attendue) from e
        except OperationalError as e:
            raise MagasinIndisponible(f"Écriture de {tenant}/{nom} impossible") from e
        logger.debug("Collection %s/%s écrite", tenant, nom)

    def _écrire_à_l_aveugle(self, conn, nom: str, tenant: str, données: dict) -> None:
        résultat = conn.execute(
            update(collections)
            .where(self._clé(nom, tenant))
            .values(donnees=données, version=collections.c.version + 1)
        )
        if résultat.rowcount == 0:
            conn.execute(
                insert(collections).values(tenant=tenant, nom=nom, donnees=données, version=1)
            )
