"""
Message Bus.

Point unique de dispatch : une command entre, son handler s'exécute,
puis les événements commités pendant l'exécution sont distribués à
leurs handlers, qui peuvent à leur tour en produire d'autres.

- Une command a exactement un handler ; une exception remonte à
  l'appelant, un Refus est retourné comme n'importe quel résultat.
- Un event a de 0 à N handlers ; leurs erreurs sont loggées puis
  ignorées, la transition déjà écrite reste acquise.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Union

from boutique.domain import commands, events, model
from boutique.service_layer import unit_of_work

logger = logging.getLogger(__name__)

Message = Union[commands.Command, events.Event]


class MessageBus:
    """
    Message Bus avec injection de dépendances par nom de paramètre.

    Chaque handler déclare ce dont il a besoin (uow, notifications,
    horloge, délai_expiration…) ; le bus le lui passe à l'appel.
    """

    def __init__(
        self,
        uow: unit_of_work.AbstractUnitOfWork,
        event_handlers: dict[type[events.Event], list[Callable]],
        command_handlers: dict[type[commands.Command], Callable],
        dependencies: dict[str, Any] | None = None,
    ):
        self.uow = uow
        self.event_handlers = event_handlers
        self.command_handlers = command_handlers
        self.dependencies = {"uow": uow, **(dependencies or {})}

    def handle(self, message: Message) -> list[Any]:
        """
        Traite un message puis la cascade d'événements qu'il déclenche.

        Retourne les résultats des commands traitées, dans l'ordre.
        Si une command échoue, les événements déjà commités sont distribués
        avant que l'erreur remonte : rien ne reste en attente pour
        l'appel suivant.
        """
        queue: list[Message] = [message]
        results: list[Any] = []
        try:
            while queue:
                message = queue.pop(0)
                if isinstance(message, events.Event):
                    self._handle_event(message, queue)
                elif isinstance(message, commands.Command):
                    results.append(self._handle_command(message, queue))
                else:
                    raise ValueError(f"Message de type inconnu : {type(message)}")
        except Exception:
            self._distribuer_événements_commités(queue)
            raise
        return results

    def _distribuer_événements_commités(self, queue: list[Message]) -> None:
        queue.extend(self.uow.collect_new_events())
        while queue:
            message = queue.pop(0)
            if isinstance(message, events.Event):
                self._handle_event(message, queue)

    def _handle_event(self, event: events.Event, queue: list[Message]) -> None:
        for handler in self.event_handlers.get(type(event), []):
            try:
                logger.debug("Event %s -> %s", type(event).__name__, handler.__name__)
                self._call_handler(handler, event)
                queue.extend(self.uow.collect_new_events())
            except Exception:
                logger.exception(
                    "Échec du handler %s pour l'event %s", handler.__name__, type(event).__name__
                )

    def _handle_command(self, command: commands.Command, queue: list[Message]) -> Any:
        handler = self.command_handlers.get(type(command))
        if handler is None:
            raise ValueError(f"Aucun handler pour la command {type(command)}")
        logger.debug("Command %s -> %s", type(command).__name__, handler.__name__)
        result = self._call_handler(handler, command)
        if model.est_un_refus(result):
            logger.debug("Command %s refusée : %s", type(command).__name__, result.message)
        queue.extend(self.uow.collect_new_events())
        return result

    def _call_handler(self, handler: Callable, message: Message) -> Any:
        """
        Le premier paramètre reçoit le message ; les suivants sont
        résolus par leur nom dans les dépendances.
        """
        _, *noms = inspect.signature(handler).parameters
        kwargs = {nom: self.dependencies[nom] for nom in noms if nom in self.dependencies}
        return handler(message, **kwargs)
