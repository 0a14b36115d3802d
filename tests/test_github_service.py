import datetime as dt

import pytest
import requests

import treehole as th

from conftest import FakeResponse


def _issue(number, body='secret'):
    return {
        'number': number,
        'title': f'Treehole 2024/1/{number}',
        'body': body,
        'created_at': f'2024-01-{number:02d}T10:00:00Z',
        'html_url': f'https://github.com/octo/wall/issues/{number}',
        'labels': [{'name': 'treehole'}],
    }


def test_create_issue_posts_fixed_shape(cfg, fake_session, monkeypatch):
    monkeypatch.setenv('GITHUB_TOKEN', 'tok')
    monkeypatch.setattr(th, 'issue_title', lambda prefix: f'{prefix} 2024/1/5')
    fake_session.queue(FakeResponse(201, _issue(7, 'hello there')))

    created = th.GitHubService(cfg).create_issue('hello there')

    assert fake_session.token == 'tok'
    call = fake_session.calls[0]
    assert call['method'] == 'POST'
    assert call['url'] == 'https://api.github.com/repos/octo/wall/issues'
    assert call['json'] == {'title': 'Treehole 2024/1/5', 'body': 'hello there', 'labels': ['treehole']}
    assert call['timeout'] == cfg.request_timeout
    assert created == th.Submission(
        body='hello there',
        created_at='2024-01-07T10:00:00Z',
        html_url='https://github.com/octo/wall/issues/7',
        number=7,
    )


def test_session_headers():
    s = th._session('tok')
    assert s.headers['Authorization'] == 'token tok'
    assert s.headers['Accept'] == 'application/vnd.github.v3+json'
    assert s.headers['X-GitHub-Api-Version'] == th.GITHUB_API_VERSION
    assert 'Authorization' not in th._session(None).headers


def test_create_issue_error_uses_server_message(cfg, fake_session):
    fake_session.queue(FakeResponse(422, {'message': 'Validation Failed'}))
    with pytest.raises(th.RequestError) as excinfo:
        th.GitHubService(cfg, token='tok').create_issue('x')
    assert str(excinfo.value) == 'Validation Failed'
    assert excinfo.value.status == 422


def test_create_issue_error_falls_back_without_message(cfg, fake_session):
    fake_session.queue(FakeResponse(500, text='<html>oops</html>'))
    with pytest.raises(th.RequestError) as excinfo:
        th.GitHubService(cfg, token='tok').create_issue('x')
    assert str(excinfo.value) == th.SUBMIT_FAILED
    assert excinfo.value.status == 500


def test_get_issues_builds_query(cfg, fake_session):
    fake_session.queue(FakeResponse(200, [_issue(3), _issue(2)]))
    items = th.GitHubService(cfg, token='tok').get_issues(2)
    call = fake_session.calls[0]
    assert call['method'] == 'GET'
    assert call['params'] == {
        'labels': 'treehole',
        'per_page': 3,
        'page': 2,
        'sort': 'created',
        'direction': 'desc',
    }
    assert [s.number for s in items] == [3, 2]


def test_get_issues_skips_pull_requests(cfg, fake_session):
    pr = dict(_issue(4), pull_request={'url': 'https://api.github.com/repos/octo/wall/pulls/4'})
    fake_session.queue(FakeResponse(200, [pr, _issue(1)]))
    items = th.GitHubService(cfg, token='tok').get_issues()
    assert [s.number for s in items] == [1]


def test_get_issues_error_extracts_message_like_create(cfg, fake_session):
    fake_session.queue(FakeResponse(404, {'message': 'Not Found'}))
    with pytest.raises(th.RequestError) as excinfo:
        th.GitHubService(cfg, token='tok').get_issues()
    assert str(excinfo.value) == 'Not Found'
    assert excinfo.value.status == 404


def test_get_issues_error_fallback(cfg, fake_session):
    fake_session.queue(FakeResponse(502))
    with pytest.raises(th.RequestError) as excinfo:
        th.GitHubService(cfg, token='tok').get_issues()
    assert str(excinfo.value) == th.LOAD_FAILED


def test_get_issues_rejects_non_list_payload(cfg, fake_session):
    fake_session.queue(FakeResponse(200, {'message': 'weird'}))
    with pytest.raises(th.RequestError):
        th.GitHubService(cfg, token='tok').get_issues()


def test_transport_failure_becomes_request_error(cfg, fake_session):
    fake_session.raise_on_request = requests.ConnectionError('connection refused')
    with pytest.raises(th.RequestError) as excinfo:
        th.GitHubService(cfg, token='tok').get_issues()
    assert excinfo.value.status is None
    assert 'connection refused' in str(excinfo.value)


def test_missing_token_raises_at_request_time(cfg, fake_session):
    service = th.GitHubService(cfg)
    with pytest.raises(th.TokenMissingError):
        service.create_issue('x')
    assert fake_session.calls == []


def test_proxy_mode_sends_no_token(cfg, fake_session, monkeypatch):
    monkeypatch.setenv('GITHUB_TOKEN', 'should-not-leak')
    cfg.use_proxy = True
    cfg.proxy_url = 'http://proxy.local/api/'
    fake_session.queue(FakeResponse(201, _issue(8, 'via proxy')), FakeResponse(200, [_issue(8)]))

    service = th.GitHubService(cfg)
    service.create_issue('via proxy')
    service.get_issues(1)

    assert fake_session.token is None
    post, get = fake_session.calls
    assert post['url'] == 'http://proxy.local/api/issues'
    assert post['json'] == {'content': 'via proxy'}
    assert get['params'] == {'page': 1}


def test_issue_title_defaults_to_today():
    today = dt.date.today()
    assert th.issue_title('T') == f'T {today.year}/{today.month}/{today.day}'


def test_full_page_with_pull_request_still_counts_as_full(cfg, fake_session):
    pr = dict(_issue(3), pull_request={'url': 'https://api.github.com/repos/octo/wall/pulls/3'})
    fake_session.queue(FakeResponse(200, [_issue(5), _issue(4), pr]))
    items = th.GitHubService(cfg, token='tok').get_issues()
    assert [s.number for s in items] == [5, 4]
    assert items.fetched == cfg.page_size


def test_get_issues_malformed_number_is_request_error(cfg, fake_session):
    fake_session.queue(FakeResponse(200, [dict(_issue(1), number='one')]))
    with pytest.raises(th.RequestError) as excinfo:
        th.GitHubService(cfg, token='tok').get_issues()
    assert str(excinfo.value).startswith('Failed to load secrets: unexpected response')
    assert excinfo.value.status == 200


def test_create_issue_malformed_number_is_request_error(cfg, fake_session):
    fake_session.queue(FakeResponse(201, dict(_issue(1), number=[])))
    with pytest.raises(th.RequestError) as excinfo:
        th.GitHubService(cfg, token='tok').create_issue('x')
    assert str(excinfo.value).startswith('Submission failed: unexpected response')
