import uuid

import pytest

from exceptions import UpstreamUnavailableError


def create_thread(client, headers, **payload):
    response = client.post("/threads", json=payload, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def post_message(client, headers, thread_id, role="user", content="hello", **extra):
    return client.post(
        "/messages",
        json={"threadId": thread_id, "role": role, "content": content, **extra},
        headers=headers,
    )


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_requests_without_token_are_rejected(client):
    for method, url in [("get", "/threads"), ("post", "/threads"), ("get", "/models"), ("post", "/chat")]:
        response = getattr(client, method)(url)
        assert response.status_code == 401, url
        assert response.headers["www-authenticate"] == "Bearer"


def test_invalid_token_is_rejected(client):
    response = client.get("/threads", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_thread_payloads_use_camel_case(client, alice, alice_headers):
    thread = create_thread(client, alice_headers, title="Explain recursion")

    assert thread["title"] == "Explain recursion"
    assert thread["userId"] == str(alice.id)
    assert thread["parentThreadId"] is None
    assert {"createdAt", "updatedAt", "selectedContext", "parentMessageId"} <= set(thread)


def test_create_thread_defaults_title(client, alice_headers):
    assert create_thread(client, alice_headers)["title"] == "New Chat"


def test_anchor_without_parent_is_invalid(client, alice_headers):
    response = client.post(
        "/threads", json={"parentMessageId": str(uuid.uuid4())}, headers=alice_headers
    )
    assert response.status_code == 422


def test_list_threads_shows_roots_with_child_counts(client, alice_headers, bob_headers):
    root = create_thread(client, alice_headers, title="root")
    create_thread(client, alice_headers, title="branch", parentThreadId=root["id"], selectedContext="span")
    create_thread(client, bob_headers, title="bob's")

    listing = client.get("/threads", headers=alice_headers).json()

    assert listing == [
        {"id": root["id"], "title": "root", "updatedAt": listing[0]["updatedAt"], "childCount": 1}
    ]


def test_thread_detail_has_messages_children_and_breadcrumbs(client, alice_headers):
    root = create_thread(client, alice_headers, title="root")
    post_message(client, alice_headers, root["id"], content="Explain recursion")
    answer = post_message(client, alice_headers, root["id"], role="assistant", content="Base case...").json()
    branch = create_thread(
        client, alice_headers,
        title="Branch: base case",
        parentThreadId=root["id"],
        parentMessageId=answer["id"],
        selectedContext="base case",
    )

    detail = client.get(f"/threads/{root['id']}", headers=alice_headers).json()
    assert [m["role"] for m in detail["messages"]] == ["user", "assistant"]
    assert detail["breadcrumbs"] == []
    assert detail["childThreads"][0]["id"] == branch["id"]
    assert detail["childThreads"][0]["childCount"] == 0
    assert detail["childThreads"][0]["selectedContext"] == "base case"

    branch_detail = client.get(f"/threads/{branch['id']}", headers=alice_headers).json()
    assert branch_detail["parentMessageId"] == answer["id"]
    assert branch_detail["breadcrumbs"] == [{"id": root["id"], "title": "root", "selectedContext": None}]
    assert branch_detail["messages"] == []


def test_other_users_threads_look_missing(client, alice_headers, bob_headers):
    thread = create_thread(client, alice_headers, title="private")
    url = f"/threads/{thread['id']}"

    assert client.get(url, headers=bob_headers).status_code == 404
    assert client.patch(url, json={"title": "x"}, headers=bob_headers).status_code == 404
    assert client.delete(url, headers=bob_headers).status_code == 404
    assert post_message(client, bob_headers, thread["id"]).status_code == 404
    assert client.post(f"{url}/branches", json={"selectedText": "x"}, headers=bob_headers).status_code == 404
    assert client.post(
        "/threads", json={"parentThreadId": thread["id"]}, headers=bob_headers
    ).status_code == 404

    assert client.get(url, headers=alice_headers).json()["title"] == "private"


def test_unknown_thread_is_not_found(client, alice_headers):
    assert client.get(f"/threads/{uuid.uuid4()}", headers=alice_headers).status_code == 404


def test_rename_thread(client, alice_headers):
    thread = create_thread(client, alice_headers)

    response = client.patch(f"/threads/{thread['id']}", json={"title": "Renamed"}, headers=alice_headers)

    assert response.status_code == 200
    assert response.json()["title"] == "Renamed"
    assert response.json()["updatedAt"] >= thread["updatedAt"]


def test_message_bumps_thread_updated_at(client, alice_headers):
    older = create_thread(client, alice_headers, title="older")
    create_thread(client, alice_headers, title="newer")

    response = post_message(client, alice_headers, older["id"], selectedText="span")
    assert response.status_code == 200
    assert response.json()["selectedText"] == "span"

    listing = client.get("/threads", headers=alice_headers).json()
    assert [t["title"] for t in listing] == ["older", "newer"]


def test_message_with_client_id_is_stored_once(client, alice_headers):
    thread = create_thread(client, alice_headers)
    message_id = str(uuid.uuid4())

    first = post_message(client, alice_headers, thread["id"], id=message_id)
    again = post_message(client, alice_headers, thread["id"], id=message_id)

    assert first.json()["id"] == message_id
    assert again.status_code == 409


def test_invalid_role_is_rejected(client, alice_headers):
    thread = create_thread(client, alice_headers)
    assert post_message(client, alice_headers, thread["id"], role="system").status_code == 422


def test_delete_thread_cascades(client, alice_headers):
    root = create_thread(client, alice_headers, title="root")
    child = create_thread(client, alice_headers, parentThreadId=root["id"])
    grandchild = create_thread(client, alice_headers, parentThreadId=child["id"])
    post_message(client, alice_headers, grandchild["id"])

    response = client.delete(f"/threads/{root['id']}", headers=alice_headers)

    assert response.json() == {"success": True}
    for thread in (root, child, grandchild):
        assert client.get(f"/threads/{thread['id']}", headers=alice_headers).status_code == 404
    assert client.get("/threads", headers=alice_headers).json() == []


def test_create_branch_endpoint(client, alice_headers):
    root = create_thread(client, alice_headers, title="root")
    post_message(client, alice_headers, root["id"], content="Explain recursion")
    answer = post_message(client, alice_headers, root["id"], role="assistant", content="...base case...").json()

    response = client.post(
        f"/threads/{root['id']}/branches", json={"selectedText": "base case"}, headers=alice_headers
    )

    assert response.status_code == 200
    branch = response.json()
    assert branch["title"] == "Branch: base case"
    assert branch["parentThreadId"] == root["id"]
    assert branch["parentMessageId"] == answer["id"]
    assert branch["selectedContext"] == "base case"
    assert branch["childCount"] == 0


def test_create_branch_rejects_blank_span(client, alice_headers):
    root = create_thread(client, alice_headers)

    empty = client.post(f"/threads/{root['id']}/branches", json={"selectedText": ""}, headers=alice_headers)
    blank = client.post(f"/threads/{root['id']}/branches", json={"selectedText": "  "}, headers=alice_headers)

    assert empty.status_code == 422
    assert blank.status_code == 400


def test_models_endpoint(client, alice_headers):
    response = client.get("/models", headers=alice_headers)
    assert response.json() == [{"id": "fake-model", "name": "Fake Model"}]


def test_chat_streams_plain_text(client, alice_headers, upstream):
    payload = {"messages": [{"role": "user", "content": "Explain recursion"}], "model": "fake-model"}

    response = client.post("/chat", json=payload, headers=alice_headers)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text == "Recursion is when a function calls itself."
    assert upstream.calls == [
        {"messages": [{"role": "user", "content": "Explain recursion"}], "model": "fake-model"}
    ]


def test_chat_failure_before_first_chunk_is_bad_gateway(client, alice_headers, upstream):
    upstream.chunks = []
    upstream.error = UpstreamUnavailableError("down")

    response = client.post(
        "/chat", json={"messages": [{"role": "user", "content": "hi"}]}, headers=alice_headers
    )

    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to get response from AI"


def test_chat_failure_after_first_chunk_aborts_the_body(client, alice_headers, upstream):
    upstream.chunks = ["Half an "]
    upstream.error = UpstreamUnavailableError("dropped")

    # The response is cut off instead of being closed as if it were complete
    with pytest.raises(Exception) as excinfo:
        client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}]}, headers=alice_headers)

    assert "dropped" in repr(excinfo.value)


def test_chat_requires_messages(client, alice_headers):
    response = client.post("/chat", json={"messages": []}, headers=alice_headers)
    assert response.status_code == 422


def test_signup_login_and_me(client):
    signup = client.post(
        "/auth/signup",
        json={"email": "carol@example.com", "username": "carol", "password": "secret123"},
    )
    assert signup.status_code == 201

    duplicate = client.post(
        "/auth/signup",
        json={"email": "carol@example.com", "username": "carol2", "password": "secret123"},
    )
    assert duplicate.status_code == 400

    bad = client.post("/auth/login", data={"username": "carol", "password": "wrong"})
    assert bad.status_code == 401

    login = client.post("/auth/login", data={"username": "carol@example.com", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["username"] == "carol"


def test_create_branch_without_anchor(client, alice_headers):
    root = create_thread(client, alice_headers)
    post_message(client, alice_headers, root["id"], role="assistant", content="older answer")

    response = client.post(
        f"/threads/{root['id']}/branches",
        json={"selectedText": "span", "anchorToLatest": False},
        headers=alice_headers,
    )

    assert response.status_code == 200
    assert response.json()["parentMessageId"] is None
