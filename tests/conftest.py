import json
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import treehole as th  # noqa: E402


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Stands in for requests.Session; replays queued responses and records calls."""

    def __init__(self, token=None):
        self.token = token
        self.calls = []
        self.responses = []
        self.raise_on_request = None

    def queue(self, *responses):
        self.responses.extend(responses)
        return self

    def request(self, method, url, **kwargs):
        self.calls.append({'method': method, 'url': url, **kwargs})
        if self.raise_on_request is not None:
            raise self.raise_on_request
        if not self.responses:
            raise AssertionError(f'unexpected {method} {url}')
        return self.responses.pop(0)


class RecordingView(th.WallView):
    """Test double for the page: records every call the controller makes."""

    def __init__(self, elements=th.ALL_ELEMENTS, input_text=''):
        self.elements = frozenset(elements)
        self.input_text = input_text
        self.calls = []
        self.rendered = []
        self.alerts = []
        self.redirects = []
        self.loading = False
        self.error = None
        self.empty = False
        self.load_more = False
        self.submitting = False

    def get_input(self):
        return self.input_text

    def clear_input(self):
        self.calls.append('clear_input')
        self.input_text = ''

    def set_submitting(self, busy):
        self.calls.append(('set_submitting', busy))
        self.submitting = busy

    def show_alert(self, message, kind='info'):
        self.alerts.append((kind, message))

    def clear_secrets(self):
        self.calls.append('clear_secrets')
        self.rendered = []

    def render_secrets(self, items):
        self.rendered.extend(items)

    def set_loading(self, visible):
        self.calls.append(('set_loading', visible))
        self.loading = visible

    def show_error(self, message):
        self.error = message

    def hide_error(self):
        self.error = None

    def set_empty(self, visible):
        self.empty = visible

    def set_load_more(self, visible):
        self.load_more = visible

    def redirect(self, target, delay):
        self.redirects.append((target, delay))


class StubService:
    """Backend double: scripted pages for get_issues, scripted result for create_issue."""

    def __init__(self, pages=None, create_result=None, create_error=None, list_error=None):
        self.pages = pages or {}
        self.create_result = create_result
        self.create_error = create_error
        self.list_error = list_error
        self.created = []
        self.requested_pages = []

    def create_issue(self, content):
        self.created.append(content)
        if self.create_error is not None:
            raise self.create_error
        return self.create_result or th.Submission(body=content, created_at='2024-01-01T00:00:00Z', number=1)

    def get_issues(self, page=1):
        self.requested_pages.append(page)
        if self.list_error is not None:
            raise self.list_error
        items = self.pages.get(page, [])
        return items if isinstance(items, th.IssuePage) else list(items)


class FakeClock:
    def __init__(self, now_ms=1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self):
        return self.now_ms


def make_submission(number=1, body='hello', created_at='2024-01-05T14:03:00Z'):
    return th.Submission(
        body=body,
        created_at=created_at,
        html_url=f'https://github.com/octo/wall/issues/{number}',
        number=number,
    )


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    for key in ('GITHUB_TOKEN', 'TREEHOLE_OWNER', 'TREEHOLE_REPO', 'TREEHOLE_PROXY_URL', 'MOCK_FETCH'):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(th, 'load_dotenv_token', lambda: None)


@pytest.fixture
def cfg():
    return th.Config(repo_owner='octo', repo_name='wall', page_size=3, cache_ttl_ms=60_000)


@pytest.fixture
def storage():
    store = th.LocalStorage(':memory:')
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(storage, cfg, clock):
    return th.CacheService(storage, cfg, clock=clock)


@pytest.fixture
def fake_session(monkeypatch):
    """Patch treehole._session so every GitHubService talks to one FakeSession."""
    holder = FakeSession()

    def factory(token):
        holder.token = token
        return holder

    monkeypatch.setattr(th, '_session', factory)
    return holder
