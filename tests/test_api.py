"""
HTTP surface tests through FastAPI's TestClient.
"""

import pytest
from fastapi.testclient import TestClient

from arena.api.app import create_app
from arena.config import Config


RUN = {
    'coinsCollected': 300,
    'maxArmy': 25,
    'distanceTraveled': 800,
    'timeTaken': 20,
    'didFinish': True,
}


@pytest.fixture
def client(database_url, monkeypatch):
    monkeypatch.setattr(Config, "ENABLED_CAPABILITIES", "")
    with TestClient(create_app(database_url, start_background_jobs=False)) as test_client:
        yield test_client


def _identity(client, external_id):
    response = client.post("/api/identity", json={'externalId': external_id, 'displayName': external_id})
    assert response.status_code == 200
    return {'X-Player-Id': external_id}, response.json()['playerId']


def _play(client, headers, **overrides):
    started = client.post("/api/runs/start", headers=headers)
    assert started.status_code == 200
    session_id = started.json()['sessionId']
    body = dict(RUN, sessionId=session_id, **overrides)
    return session_id, client.post("/api/runs/finish", json=body, headers=headers)


def test_identity_is_idempotent(client):
    headers, player_id = _identity(client, "player-abc")
    again = client.post("/api/identity", json={'externalId': 'player-abc', 'displayName': 'Renamed'})
    assert again.json()['playerId'] == player_id
    assert again.json()['username'] == 'Renamed'

    balance = client.get("/api/balance", headers=headers)
    assert balance.json() == {'coins': 0, 'gems': 0}


def test_requests_without_identity_are_refused(client):
    assert client.get("/api/balance").status_code == 401
    assert client.get("/api/balance", headers={'X-Player-Id': 'nobody'}).status_code == 404


def test_finish_run_flow(client):
    headers, _ = _identity(client, "runner")

    started = client.post("/api/runs/start", headers=headers).json()
    assert started['trackLength'] == 800
    assert started['difficulty'] == 1.0

    finish = client.post("/api/runs/finish", json=dict(RUN, sessionId=started['sessionId']), headers=headers)
    assert finish.status_code == 200
    body = finish.json()
    assert body['accepted'] is True
    assert body['reward'] == {'coins': 600}
    assert 'first_run' in body['unlockedAchievements']
    # Run reward plus the first_run and first_finish achievement rewards
    assert body['newBalance'] == {'coins': 900, 'gems': 5}

    replay = client.post("/api/runs/finish", json=dict(RUN, sessionId=started['sessionId']), headers=headers)
    assert replay.status_code == 409
    assert replay.json() == {
        'accepted': False,
        'reward': None,
        'newBalance': None,
        'rejectionReason': 'already settled',
        'unlockedAchievements': [],
        'completedMissions': [],
    }


def test_cheating_run_is_rejected_with_reason(client):
    headers, _ = _identity(client, "speedster")
    _, finish = _play(client, headers, timeTaken=2)
    assert finish.status_code == 400
    assert finish.json()['accepted'] is False
    assert finish.json()['rejectionReason'] == 'completion time impossible'
    assert client.get("/api/balance", headers=headers).json() == {'coins': 0, 'gems': 0}


def test_ledger_and_stats(client):
    headers, player_id = _identity(client, "runner")
    _play(client, headers)

    ledger = client.get("/api/ledger", headers=headers).json()
    assert ledger['integrity']['integrity_check'] is True
    assert [entry['category'] for entry in ledger['entries']][0] == 'game_reward'

    stats = client.get("/api/stats", headers=headers).json()
    assert stats['player_id'] == player_id
    assert stats['games_played'] == 1
    assert len(stats['recent_runs']) == 1


def test_leaderboard(client):
    fast, fast_id = _identity(client, "fast")
    slow, _ = _identity(client, "slow")
    _play(client, fast, finalScore=5000)
    _play(client, slow, finalScore=3000)

    page = client.get("/api/leaderboard", params={'period': 'alltime', 'limit': 10}).json()
    assert page['total_players'] == 2
    assert page['entries'][0]['player_id'] == fast_id
    assert page['entries'][0]['best_score'] == 5000

    assert client.get("/api/leaderboard", params={'period': 'monthly'}).status_code == 400
    assert client.get("/api/leaderboard", params={'limit': 500}).status_code == 400


def test_upgrades_and_shop_errors(client):
    headers, _ = _identity(client, "shopper")
    assert client.post("/api/upgrades/teleport", headers=headers).status_code == 400
    assert client.post("/api/upgrades/speed", headers=headers).status_code == 400

    _play(client, headers)
    bought = client.post("/api/upgrades/speed", headers=headers)
    assert bought.status_code == 200
    assert bought.json()['details']['level'] == 1

    assert client.post("/api/shop/skins/equip", json={'skinId': 'fire'}, headers=headers).status_code == 403
    assert client.post("/api/shop/lootbox", json={'boxType': 'gold'}, headers=headers).status_code == 400


def test_missions_and_claims(client):
    headers, _ = _identity(client, "grinder")
    _play(client, headers)

    missions = client.get("/api/missions", headers=headers).json()
    assert missions['dailyResetIn'] > 0
    finished = next(m for m in missions['daily'] if m['mission_id'] == 'daily_finish')
    assert finished['completed'] is True

    claimed = client.post("/api/missions/claim", json={'missionId': 'daily_finish'}, headers=headers)
    assert claimed.status_code == 200
    replay = client.post("/api/missions/claim", json={'missionId': 'daily_finish'}, headers=headers)
    assert replay.status_code == 409
    assert replay.json()['detail'] == 'already claimed'


def test_disabled_capability_endpoint(client):
    headers, _ = _identity(client, "gatekeeper")
    session_id = client.post("/api/runs/start", headers=headers).json()['sessionId']
    response = client.post(f"/api/runs/{session_id}/events/collect_gate", json={'payload': {}}, headers=headers)
    assert response.status_code == 403
    assert response.json()['detail'] == 'capability disabled: collect_gate'


def test_matchmaking_to_settled_wager(client):
    alice, alice_id = _identity(client, "alice")
    bob, bob_id = _identity(client, "bob")
    _play(client, alice)
    _play(client, bob)

    queued = client.post("/api/matchmaking/join", json={'stake': 50}, headers=alice).json()
    assert queued['status'] == 'queued'
    matched = client.post("/api/matchmaking/join", json={'stake': 50}, headers=bob).json()
    assert matched['status'] == 'matched'
    match_id = matched['match_id']

    first = client.post(f"/api/matches/{match_id}/result", json=RUN, headers=alice).json()
    assert first['awaiting'] == 1
    settled = client.post(f"/api/matches/{match_id}/result",
                          json=dict(RUN, didFinish=False, distanceTraveled=400), headers=bob).json()
    assert settled['winner_id'] == alice_id
    assert settled['payouts'] == {str(alice_id): 90}
    assert settled['house_fee'] == 10

    assert client.get("/api/balance", headers=alice).json()['coins'] == 900 - 50 + 90
    assert client.get("/api/balance", headers=bob).json()['coins'] == 900 - 50

    assert client.post("/api/matchmaking/join", json={'stake': 0}, headers=alice).status_code == 422
