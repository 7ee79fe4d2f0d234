# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the dispatcher delivering client events to user callbacks"""

import asyncio
import inspect
import logging
from typing import Any, Dict, Optional, Set, Union
from .custom_typing import FunctionOrCoroutine
from . import constant

logger = logging.getLogger(__name__)

EventCallback = FunctionOrCoroutine[[Any], None]


class Listener(object):
    """A callback registered for a category of event, optionally restricted to a name"""

    def __init__(self, callback: EventCallback, name_filter: Optional[str] = None) -> None:
        self.callback = callback
        self.name_filter = name_filter

    def accepts(self, name: Optional[str]) -> bool:
        return self.name_filter is None or self.name_filter == name


class EventDispatcher(object):
    """Delivers events to at most one listener per event category.

    Registering a listener for a category replaces any listener previously registered for it.
    Function callbacks are invoked immediately. Coroutine callbacks are run as tasks on the
    running event loop. Exceptions raised by callbacks are logged, and never propagated to the
    code emitting the event.
    """

    def __init__(self) -> None:
        self._listeners: Dict[constant.IOTCEvents, Listener] = {}
        self._pending: Set["asyncio.Task[None]"] = set()

    def on(
        self,
        category: Union[constant.IOTCEvents, str],
        callback: EventCallback,
        name_filter: Optional[str] = None,
    ) -> None:
        """Register a listener for a category of event

        :param category: The category of event
        :type category: :class:`IOTCEvents` or str
        :param callback: Function or coroutine function invoked with each event
        :param str name_filter: If provided, only events with this name are delivered

        :raises: ValueError if the category is not valid
        :raises: TypeError if the callback is not callable
        """
        category = constant.parse_enum(constant.IOTCEvents, category)
        if not callable(callback):
            raise TypeError("Callback must be callable")
        if category in self._listeners:
            logger.debug("Replacing listener for {}".format(category.value))
        self._listeners[category] = Listener(callback, name_filter)

    def get_listener(self, category: Union[constant.IOTCEvents, str]) -> Optional[Listener]:
        category = constant.parse_enum(constant.IOTCEvents, category)
        return self._listeners.get(category)

    def emit(
        self, category: Union[constant.IOTCEvents, str], payload: Any, name: Optional[str] = None
    ) -> bool:
        """Deliver an event to the listener for its category

        :param category: The category of event
        :param payload: The object passed to the callback
        :param str name: The name of the event, matched against the name filter of the listener

        :returns: True if a listener accepted the event
        :rtype: bool
        """
        category = constant.parse_enum(constant.IOTCEvents, category)
        listener = self._listeners.get(category)
        if listener is None:
            logger.debug("No listener for {} event. Dropping".format(category.value))
            return False
        if not listener.accepts(name):
            logger.debug(
                "{} event '{}' does not match listener filter. Dropping".format(category.value, name)
            )
            return False

        callback = listener.callback
        if inspect.iscoroutinefunction(callback):
            task = asyncio.get_running_loop().create_task(callback(payload))
            self._pending.add(task)
            task.add_done_callback(self._on_task_done)
        else:
            try:
                callback(payload)
            except Exception as e:
                logger.error(
                    "Unexpected error ({}) in {} callback. Ignoring".format(e, category.value)
                )
        return True

    async def wait_for_pending(self) -> None:
        """Wait for all coroutine callbacks that are currently running to complete"""
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        e = task.exception()
        if e:
            logger.error("Unexpected error ({}) in event callback. Ignoring".format(e))
