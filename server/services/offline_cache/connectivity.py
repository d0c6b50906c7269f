"""Connectivity signals for the sync queue.

The queue only needs three edges: going online, going offline and the
page/app becoming visible again. Any source that can report those (browser
events, a network probe, an admin endpoint) fits ConnectivityObserver.
"""

from typing import Callable, List, Optional, Protocol, Tuple

from core.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[], None]


class ConnectivityObserver(Protocol):
    """Protocol for connectivity sources (enables duck typing)."""

    def is_online(self) -> bool:
        """Current connectivity at subscription time."""
        ...

    def subscribe(self, on_online: Handler, on_offline: Handler,
                  on_visible: Optional[Handler] = None) -> Callable[[], None]:
        """Register handlers; returns a callable that unsubscribes them."""
        ...


class ManualConnectivity:
    """Connectivity driven by explicit calls.

    Used by the admin API and tests. Online/offline handlers fire only on
    a transition; visibility fires every time.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._subscribers: List[Tuple[Handler, Handler, Optional[Handler]]] = []

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, on_online: Handler, on_offline: Handler,
                  on_visible: Optional[Handler] = None) -> Callable[[], None]:
        entry = (on_online, on_offline, on_visible)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def go_online(self) -> None:
        if self._online:
            return
        self._online = True
        logger.info("Connectivity restored")
        for on_online, _, _ in list(self._subscribers):
            on_online()

    def go_offline(self) -> None:
        if not self._online:
            return
        self._online = False
        logger.info("Connectivity lost")
        for _, on_offline, _ in list(self._subscribers):
            on_offline()

    def become_visible(self) -> None:
        for _, _, on_visible in list(self._subscribers):
            if on_visible:
                on_visible()
