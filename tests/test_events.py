import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from taskboard.events import BoardEventHub

ALICE = {"Authorization": "Bearer alice"}


def test_hub_delivers_to_board_subscribers_only():
    hub = BoardEventHub()

    async def scenario():
        queue = hub.subscribe("b1")
        other = hub.subscribe("b2")
        assert hub.publish("b1", "card-moved", {"id": "c1"}) == 1
        event = await asyncio.wait_for(queue.get(), timeout=1)
        assert other.empty()
        hub.unsubscribe("b1", queue)
        assert hub.publish("b1", "card-moved", {"id": "c1"}) == 0
        return event

    event = asyncio.run(scenario())
    assert event == {"type": "card-moved", "boardId": "b1", "payload": {"id": "c1"}}
    assert hub.subscriber_count("b1") == 0


def test_websocket_receives_card_moves(client):
    board = client.post("/v1/boards", json={"title": "Live"}, headers=ALICE).json()
    l1 = client.post(f"/v1/boards/{board['id']}/lists", json={"title": "L1"}, headers=ALICE).json()
    l2 = client.post(f"/v1/boards/{board['id']}/lists", json={"title": "L2"}, headers=ALICE).json()
    card = client.post(f"/v1/lists/{l1['id']}/cards", json={"title": "A"}, headers=ALICE).json()

    with client.websocket_connect(f"/v1/boards/{board['id']}/events?token=alice") as ws:
        resp = client.post(
            f"/v1/cards/{card['id']}/move",
            json={"destinationListId": l2["id"], "position": 0},
            headers=ALICE,
        )
        assert resp.status_code == 200
        event = ws.receive_json()

    assert event["type"] == "card-moved"
    assert event["boardId"] == board["id"]
    assert event["payload"]["sourceListId"] == l1["id"]
    assert event["payload"]["destinationListId"] == l2["id"]
    assert event["payload"]["oldPosition"] == 0
    assert event["payload"]["newPosition"] == 0
    assert event["payload"]["destinationOrder"] == [card["id"]]


def test_websocket_rejects_strangers(client):
    board = client.post("/v1/boards", json={"title": "Private"}, headers=ALICE).json()
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/v1/boards/{board['id']}/events?token=mallory"):
            pass


def test_websocket_receives_assignments_and_comments(client):
    board = client.post("/v1/boards", json={"title": "Live"}, headers=ALICE).json()
    lst = client.post(f"/v1/boards/{board['id']}/lists", json={"title": "L1"}, headers=ALICE).json()
    card = client.post(f"/v1/lists/{lst['id']}/cards", json={"title": "A"}, headers=ALICE).json()

    with client.websocket_connect(f"/v1/boards/{board['id']}/events?token=alice") as ws:
        client.post(f"/v1/cards/{card['id']}/assign", json={"userId": "alice"}, headers=ALICE)
        assigned = ws.receive_json()
        client.post(f"/v1/cards/{card['id']}/comments", json={"text": "on it"}, headers=ALICE)
        commented = ws.receive_json()

    assert assigned["type"] == "card-assigned"
    assert assigned["payload"] == {"id": card["id"], "userId": "alice", "assignees": ["alice"]}
    assert commented["type"] == "card-comment-added"
    assert commented["payload"]["id"] == card["id"]
    assert commented["payload"]["comment"]["text"] == "on it"
