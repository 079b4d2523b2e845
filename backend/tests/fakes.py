import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from urllib.parse import urlsplit

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------- HORLOGE ----------
class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------- HTTP SCRIPTÉ ----------
class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.content = b"" if payload is None else json.dumps(payload).encode()
        self.text = self.content.decode()

    def json(self):
        if self._payload is None:
            raise ValueError("empty body")
        return self._payload


class FakeHttpSession:
    """
    Remplace requests.Session.
    Réponses par (méthode, chemin) consommées dans l'ordre ; la dernière reste en place.
    Une réponse peut être une exception (levée) ou un callable(params, json, data).
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.calls: list[SimpleNamespace] = []

    def add(self, method: str, path: str, *responses) -> None:
        self.routes.setdefault((method.upper(), path), []).extend(responses)

    def calls_to(self, method: str, path: str) -> list[SimpleNamespace]:
        return [c for c in self.calls if c.method == method.upper() and c.path == path]

    def request(self, method, url, headers=None, params=None, json=None, data=None, timeout=None):
        path = urlsplit(url).path
        self.calls.append(
            SimpleNamespace(method=method.upper(), path=path, headers=headers, params=params, json=json, data=data)
        )
        queue = self.routes.get((method.upper(), path))
        if not queue:
            raise AssertionError(f"unexpected call {method} {path}")
        resp = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(resp, Exception):
            raise resp
        if callable(resp):
            return resp(params=params, json=json, data=data)
        return resp


