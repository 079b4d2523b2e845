"""
Verrous par clé (un writer par clé, lecteurs sans verrou).

Utilisé pour sérialiser :
- les transferts touchant une même paire (produit, entrepôt)
- l'application des webhooks d'une même annonce externe
- les refresh de token d'un même compte

Une entrée n'existe que tant qu'un thread la tient ou l'attend (compteur de références).
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _Entry()
            entry.users += 1
            return entry.lock

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        # ordre d'acquisition stable => pas d'interblocage entre deux transferts croisés
        ordered = sorted(set(keys), key=repr)
        acquired: list[tuple[Hashable, threading.RLock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)
