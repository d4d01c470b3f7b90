def test_health(client):
    assert client.get("/v1/health").json() == {"status": "ok"}


def test_version(client):
    assert client.get("/v1/version").json() == {"version": "1.0.0"}
