import os

import pytest
from fastapi.testclient import TestClient

import config_app
from app import app as default_app, create_app
from conftest import SR, make_song, to_pcm16_bytes, to_wav_bytes
from ringabell.shazam import ShazamRecognizer


@pytest.fixture
def client():
    return TestClient(create_app(recognizer=ShazamRecognizer()))


def upload(data, name="clip.wav"):
    return {"file": (name, data, "audio/wav")}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "songs": 0}


def test_register_then_search(client, song_a):
    wav = to_wav_bytes(song_a)

    response = client.post("/register", data={"name": "song-a"}, files=upload(wav))
    assert response.status_code == 200
    assert response.json() == {"songId": 1, "songName": "song-a"}

    response = client.post("/search", files=upload(wav))
    assert response.status_code == 200
    body = response.json()
    assert body["songName"] == "song-a"
    assert body["score"] == pytest.approx(1.0)

    assert client.get("/songs").json() == {"songs": ["song-a"]}


def test_search_unknown_song(client, song_a, song_b):
    client.post("/register", data={"name": "song-a"}, files=upload(to_wav_bytes(song_a)))

    response = client.post("/search", files=upload(to_wav_bytes(song_b)))

    assert response.status_code == 200
    assert response.json() == {"songName": None, "score": 0.0}


def test_raw_pcm_upload(client, song_a):
    pcm = to_pcm16_bytes(song_a)
    form = {"name": "song-a", "sample_rate": str(SR)}

    assert client.post("/register", data=form, files=upload(pcm, "clip.raw")).status_code == 200

    response = client.post("/search", data={"sample_rate": str(SR)}, files=upload(pcm, "clip.raw"))
    assert response.json()["songName"] == "song-a"


def test_duplicate_name_conflicts(client, song_a):
    wav = to_wav_bytes(song_a)
    client.post("/register", data={"name": "song-a"}, files=upload(wav))

    response = client.post("/register", data={"name": "song-a"}, files=upload(to_wav_bytes(make_song(3))))
    assert response.status_code == 409


@pytest.mark.parametrize("data", [b"", b"not audio at all"])
def test_invalid_uploads(client, data):
    response = client.post("/register", data={"name": "broken"}, files=upload(data))
    assert response.status_code == 400
    assert client.post("/search", files=upload(data)).status_code == 400
    assert client.get("/health").json()["songs"] == 0


def test_registrations_are_persisted(tmp_path, song_a):
    snapshot = tmp_path / "db" / "index.rbfp"
    client = TestClient(create_app(recognizer=ShazamRecognizer(), snapshot_path=snapshot))

    client.post("/register", data={"name": "song-a"}, files=upload(to_wav_bytes(song_a)))

    assert snapshot.exists()
    restored = TestClient(create_app(snapshot_path=snapshot))
    assert restored.get("/health").json() == {"status": "ok", "songs": 1}
    assert restored.post("/search", files=upload(to_wav_bytes(song_a))).json()["songName"] == "song-a"


def test_default_app_reads_snapshot_path_from_environment():
    assert config_app.SNAPSHOT_PATH == os.environ["RINGABELL_SNAPSHOT"]
    assert TestClient(default_app).get("/health").json() == {"status": "ok", "songs": 0}
