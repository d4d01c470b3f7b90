ALICE = {"Authorization": "Bearer alice"}
BOB = {"Authorization": "Bearer bob"}


def create_board(client, title="Sprint", headers=ALICE, **extra):
    resp = client.post("/v1/boards", json={"title": title, **extra}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def create_list(client, board_id, title, headers=ALICE):
    resp = client.post(f"/v1/boards/{board_id}/lists", json={"title": title}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def create_card(client, list_id, title, headers=ALICE, **extra):
    resp = client.post(f"/v1/lists/{list_id}/cards", json={"title": title, **extra}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def board_view(client, board_id, headers=ALICE):
    resp = client.get(f"/v1/boards/{board_id}", headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def titles_by_list(view):
    return {lst["title"]: [(c["title"], c["position"]) for c in lst["cards"]] for lst in view["lists"]}


def test_create_board_makes_creator_owner(client):
    board = create_board(client, description="  weekly  ")
    assert board["myRole"] == "owner"
    assert board["membersCount"] == 1
    assert board["description"] == "weekly"
    listed = client.get("/v1/boards", headers=ALICE).json()["boards"]
    assert [b["id"] for b in listed] == [board["id"]]
    assert client.get("/v1/boards", headers=BOB).json()["boards"] == []


def test_lists_and_cards_are_appended(client):
    board = create_board(client)
    todo = create_list(client, board["id"], "Todo")
    doing = create_list(client, board["id"], "Doing")
    assert (todo["position"], doing["position"]) == (0, 1)

    first = create_card(client, todo["id"], "A", priority="high", labels=[{"name": "bug", "color": "#eb5a46"}])
    second = create_card(client, todo["id"], "B")
    assert (first["position"], second["position"]) == (0, 1)
    assert first["labels"] == [{"name": "bug", "color": "#eb5a46"}]

    view = board_view(client, board["id"])
    assert view["board"]["listIds"] == [todo["id"], doing["id"]]
    assert titles_by_list(view) == {"Todo": [("A", 0), ("B", 1)], "Doing": []}
    assert view["lists"][0]["cardIds"] == [first["id"], second["id"]]


def test_move_card_across_lists(client):
    board = create_board(client)
    l1 = create_list(client, board["id"], "L1")
    l2 = create_list(client, board["id"], "L2")
    a = create_card(client, l1["id"], "A")
    b = create_card(client, l1["id"], "B")
    x = create_card(client, l2["id"], "X")

    resp = client.post(
        f"/v1/cards/{a['id']}/move",
        json={"sourceListId": l1["id"], "destinationListId": l2["id"], "position": 1},
        headers=ALICE,
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["member"]["listId"] == l2["id"]
    assert body["member"]["position"] == 1
    assert body["member"]["version"] == 2
    assert body["affectedIds"] == [b["id"]]
    assert body["sourceOrder"] == [b["id"]]
    assert body["destinationOrder"] == [x["id"], a["id"]]

    assert titles_by_list(board_view(client, board["id"])) == {"L1": [("B", 0)], "L2": [("X", 0), ("A", 1)]}


def test_move_card_within_list(client):
    board = create_board(client)
    lst = create_list(client, board["id"], "Todo")
    cards = [create_card(client, lst["id"], t) for t in ("A", "B", "C")]

    resp = client.post(
        f"/v1/cards/{cards[2]['id']}/move",
        json={"destinationListId": lst["id"], "position": 0},
        headers=ALICE,
    )
    assert resp.status_code == 200, resp.text
    assert titles_by_list(board_view(client, board["id"])) == {"Todo": [("C", 0), ("A", 1), ("B", 2)]}


def test_move_errors(client):
    board = create_board(client)
    l1 = create_list(client, board["id"], "L1")
    l2 = create_list(client, board["id"], "L2")
    card = create_card(client, l1["id"], "A")

    resp = client.post(
        f"/v1/cards/{card['id']}/move", json={"destinationListId": l2["id"], "position": 3}, headers=ALICE
    )
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "invalid_range"
    assert error["requestId"]

    resp = client.post(
        f"/v1/cards/{card['id']}/move",
        json={"sourceListId": l2["id"], "destinationListId": l2["id"], "position": 0},
        headers=ALICE,
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "stale_state"

    resp = client.post("/v1/cards/missing/move", json={"destinationListId": l2["id"], "position": 0}, headers=ALICE)
    assert resp.status_code == 404

    resp = client.post(
        f"/v1/cards/{card['id']}/move", json={"destinationListId": "missing", "position": 0}, headers=ALICE
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_move_and_delete_lists(client):
    board = create_board(client)
    lists = [create_list(client, board["id"], t) for t in ("L1", "L2", "L3")]

    resp = client.post(f"/v1/lists/{lists[0]['id']}/move", json={"position": 2}, headers=ALICE)
    assert resp.status_code == 200, resp.text
    assert resp.json()["member"]["position"] == 2
    assert resp.json()["destinationOrder"] == [lists[1]["id"], lists[2]["id"], lists[0]["id"]]

    assert client.delete(f"/v1/lists/{lists[2]['id']}", headers=ALICE).status_code == 204
    view = board_view(client, board["id"])
    assert [(lst["title"], lst["position"]) for lst in view["lists"]] == [("L2", 0), ("L1", 1)]
    assert view["board"]["listIds"] == [lists[1]["id"], lists[0]["id"]]


def test_delete_card_compacts(client):
    board = create_board(client)
    lst = create_list(client, board["id"], "Todo")
    cards = [create_card(client, lst["id"], t) for t in ("A", "B", "C")]
    assert client.delete(f"/v1/cards/{cards[0]['id']}", headers=ALICE).status_code == 204
    assert titles_by_list(board_view(client, board["id"])) == {"Todo": [("B", 0), ("C", 1)]}
    assert client.get(f"/v1/cards/{cards[0]['id']}", headers=ALICE).status_code == 404


def test_update_and_archive_card(client):
    board = create_board(client)
    lst = create_list(client, board["id"], "Todo")
    card = create_card(client, lst["id"], "A")

    resp = client.patch(
        f"/v1/cards/{card['id']}",
        json={"title": "A2", "isCompleted": True},
        headers={**ALICE, "If-Match": '"1"'},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["title"] == "A2"
    assert resp.json()["isCompleted"] is True
    assert resp.json()["version"] == 2

    stale = client.patch(f"/v1/cards/{card['id']}", json={"title": "A3"}, headers={**ALICE, "If-Match": '"1"'})
    assert stale.status_code == 409

    archived = client.post(f"/v1/cards/{card['id']}/archive", headers=ALICE).json()
    assert archived["isArchived"] is True
    assert titles_by_list(board_view(client, board["id"])) == {"Todo": []}
    resp = client.get(f"/v1/boards/{board['id']}", params={"includeArchived": True}, headers=ALICE)
    assert [c["title"] for c in resp.json()["lists"][0]["cards"]] == ["A2"]


def test_roles_guard_mutations(client):
    board = create_board(client)
    lst = create_list(client, board["id"], "Todo")

    resp = client.get(f"/v1/boards/{board['id']}", headers=BOB)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"

    resp = client.post(f"/v1/boards/{board['id']}/members", json={"userId": "bob", "role": "observer"}, headers=ALICE)
    assert resp.status_code == 201
    assert board_view(client, board["id"], headers=BOB)["board"]["myRole"] == "observer"

    resp = client.post(f"/v1/lists/{lst['id']}/cards", json={"title": "nope"}, headers=BOB)
    assert resp.status_code == 403

    client.post(f"/v1/boards/{board['id']}/members", json={"userId": "bob", "role": "member"}, headers=ALICE)
    create_card(client, lst["id"], "yes", headers=BOB)
    assert client.delete(f"/v1/boards/{board['id']}", headers=BOB).status_code == 403
    assert client.delete(f"/v1/boards/{board['id']}/members/alice", headers=ALICE).status_code == 403


def test_public_board_is_readable(client):
    board = create_board(client, visibility="public")
    view = board_view(client, board["id"], headers=BOB)
    assert view["board"]["myRole"] is None
    public = client.get("/v1/boards/public", headers=BOB).json()["boards"]
    assert [b["id"] for b in public] == [board["id"]]
    resp = client.post(f"/v1/boards/{board['id']}/lists", json={"title": "L"}, headers=BOB)
    assert resp.status_code == 403


def test_update_and_delete_board(client):
    board = create_board(client)
    resp = client.patch(
        f"/v1/boards/{board['id']}",
        json={"title": "Renamed", "background": "#519839"},
        headers={**ALICE, "If-Match": '"1"'},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["title"] == "Renamed"
    assert resp.json()["version"] == 2

    lst = create_list(client, board["id"], "Todo")
    card = create_card(client, lst["id"], "A")
    assert client.delete(f"/v1/boards/{board['id']}", headers=ALICE).status_code == 204
    assert client.get(f"/v1/boards/{board['id']}", headers=ALICE).status_code == 404
    assert client.get(f"/v1/cards/{card['id']}", headers=ALICE).status_code == 404


def test_activity_is_newest_first(client):
    board = create_board(client)
    lst = create_list(client, board["id"], "Todo")
    create_card(client, lst["id"], "A")
    resp = client.get(f"/v1/boards/{board['id']}/activity", params={"limit": 2}, headers=ALICE)
    assert resp.status_code == 200
    assert [a["action"] for a in resp.json()] == ["added a card", "added a list"]


def test_reconcile_on_clean_board_changes_nothing(client):
    board = create_board(client)
    lst = create_list(client, board["id"], "Todo")
    create_card(client, lst["id"], "A")
    resp = client.post(f"/v1/boards/{board['id']}/reconcile", headers=ALICE)
    assert resp.status_code == 200
    assert resp.json() == {"changed": {}}


def test_requests_need_bearer_token(client):
    assert client.get("/v1/boards", headers={"Authorization": "Basic abc"}).status_code == 401


def test_assign_and_unassign_card_members(client):
    board = create_board(client)
    lst = create_list(client, board["id"], "Todo")
    card = create_card(client, lst["id"], "A")
    client.post(f"/v1/boards/{board['id']}/members", json={"userId": "bob", "role": "member"}, headers=ALICE)

    resp = client.post(f"/v1/cards/{card['id']}/assign", json={"userId": "bob"}, headers=ALICE)
    assert resp.status_code == 200, resp.text
    assert resp.json()["assignees"] == ["bob"]
    assert resp.json()["version"] == 2

    again = client.post(f"/v1/cards/{card['id']}/assign", json={"userId": "bob"}, headers=ALICE)
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "invalid_request"
    stranger = client.post(f"/v1/cards/{card['id']}/assign", json={"userId": "carol"}, headers=ALICE)
    assert stranger.status_code == 404

    resp = client.delete(f"/v1/cards/{card['id']}/assign/bob", headers=BOB)
    assert resp.status_code == 200, resp.text
    assert resp.json()["assignees"] == []
    assert client.delete(f"/v1/cards/{card['id']}/assign/bob", headers=BOB).status_code == 404

    actions = [a["action"] for a in client.get(f"/v1/boards/{board['id']}/activity", headers=ALICE).json()]
    assert actions[:2] == ["unassigned a member", "assigned a member"]


def test_comments_show_up_on_the_card(client):
    board = create_board(client)
    lst = create_list(client, board["id"], "Todo")
    card = create_card(client, lst["id"], "A")

    resp = client.post(f"/v1/cards/{card['id']}/comments", json={"text": "first"}, headers=ALICE)
    assert resp.status_code == 201, resp.text
    comment = resp.json()
    assert (comment["userId"], comment["text"]) == ("alice", "first")

    fetched = client.get(f"/v1/cards/{card['id']}", headers=ALICE).json()
    assert [c["id"] for c in fetched["comments"]] == [comment["id"]]
    assert client.post(f"/v1/cards/{card['id']}/comments", json={"text": ""}, headers=ALICE).status_code == 422
    assert client.post(f"/v1/cards/{card['id']}/comments", json={"text": "x" * 1001}, headers=ALICE).status_code == 422

    client.post(f"/v1/boards/{board['id']}/members", json={"userId": "bob", "role": "observer"}, headers=ALICE)
    assert client.post(f"/v1/cards/{card['id']}/comments", json={"text": "hi"}, headers=BOB).status_code == 403


def test_favorite_is_per_user(client):
    board = create_board(client, visibility="public")
    resp = client.put(f"/v1/boards/{board['id']}/favorite", headers=BOB)
    assert resp.status_code == 200, resp.text
    assert resp.json() == {"boardId": board["id"], "isFavorite": True}
    assert board_view(client, board["id"], headers=BOB)["board"]["isFavorite"] is True
    assert board_view(client, board["id"], headers=ALICE)["board"]["isFavorite"] is False

    assert client.put(f"/v1/boards/{board['id']}/favorite", headers=BOB).json()["isFavorite"] is False
    private = create_board(client, title="Private")
    assert client.put(f"/v1/boards/{private['id']}/favorite", headers=BOB).status_code == 403
