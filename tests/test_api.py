import json
import time

from session_relay.models.enums import RunStatus


def test_health(api_client):
    assert api_client.get("/health").json() == {"status": "ok"}


def test_snapshot_falls_back_to_recording_tail(api_client, recording_service):
    recording = recording_service.open_recording("s_done")
    recording.write(b"$ ls\r\nREADME.md\r\n")
    recording.close()

    response = api_client.get("/api/term/snapshot/s_done", params={"tailBytes": 5000})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "data": "$ ls\r\nREADME.md\r\n"}


def test_replay_is_plain_text(api_client, recording_service):
    recording = recording_service.open_recording("s_done")
    recording.write(b"hello")
    recording.close()

    response = api_client.get("/api/term/replay/s_done")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text == "hello"


def test_snapshot_rejects_bad_ids_and_missing_recordings(api_client):
    assert api_client.get("/api/term/snapshot/bad.id").status_code == 400
    assert api_client.get("/api/term/replay/s_absent").status_code == 404
    assert api_client.get("/api/term/snapshot/s_absent").status_code == 404


def test_list_recordings(api_client, recording_service):
    recording = recording_service.open_recording("s_one")
    recording.write(b"abc")
    recording.close()

    body = api_client.get("/api/term/sessions").json()

    assert body["ok"] is True
    assert [item["sessionId"] for item in body["sessions"]] == ["s_one"]
    assert body["sessions"][0]["sizeBytes"] == 3


def test_stream_run_returns_ndjson(api_client, fake_agent, project_dir):
    with api_client.stream(
        "POST", "/api/agent/stream", json={"prompt": "hello", "cwd": str(project_dir)}
    ) as response:
        assert response.status_code == 200
        run_id = response.headers["x-run-id"]
        assert response.headers["content-type"].startswith("application/x-ndjson")
        lines = [json.loads(line) for line in response.iter_lines() if line]

    assert lines[-1] == {"type": "result", "exitCode": 0, "signal": None, "timedOut": False}

    runs = api_client.get("/api/agent/runs").json()
    assert runs[0]["id"] == run_id
    assert runs[0]["strategy"] == "LIVE"


def test_start_run_and_poll_output(api_client, fake_agent, project_dir):
    response = api_client.post("/api/agent/start", json={"prompt": "hello", "cwd": str(project_dir)})
    assert response.status_code == 200
    run_id = response.json()["runId"]

    deadline = time.time() + 15
    while True:
        body = api_client.get(f"/api/agent/task/{run_id}/output", params={"offset": 0}).json()
        if body["ended"]:
            break
        assert time.time() < deadline
        time.sleep(0.05)

    assert body["ok"] is True
    assert body["nextOffset"] == len(body["output"].encode("utf-8"))
    assert json.loads(body["output"].splitlines()[-1])["type"] == "result"

    runs = api_client.get("/api/agent/runs").json()
    assert runs[0]["status"] == RunStatus.COMPLETED.value


def test_run_requests_are_validated(api_client, project_dir):
    missing = api_client.post("/api/agent/start", json={"prompt": "", "cwd": str(project_dir)})
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Missing prompt"

    outside = api_client.post("/api/agent/stream", json={"prompt": "hi", "cwd": "/"})
    assert outside.status_code == 400

    assert api_client.get("/api/agent/task/not-a-uuid/output").status_code == 400
    assert api_client.get("/api/agent/stream/not-a-uuid").status_code == 400

    unknown = "00000000-0000-4000-8000-000000000000"
    assert api_client.get(f"/api/agent/task/{unknown}/output").status_code == 404
    assert api_client.post(f"/api/agent/task/{unknown}/stop").status_code == 404
    assert api_client.post(f"/api/agent/stream/{unknown}/stop").status_code == 404
    assert api_client.get(f"/api/agent/stream/{unknown}").status_code == 404


def test_models_endpoint(api_client, fake_agent):
    body = api_client.get("/api/agent/models").json()

    assert body["ok"] is True
    assert body["models"][0] == {"id": "auto", "label": "Auto"}


def test_websocket_open_and_command(api_client, project_dir):
    with api_client.websocket_connect("/ws/term") as websocket:
        websocket.send_text(
            json.dumps({"type": "open", "requestId": "o1", "cwd": str(project_dir), "mode": "native"})
        )
        opened = websocket.receive_json()
        assert opened["type"] == "open.resp"
        assert opened["ok"] is True
        session_id = opened["sessionId"]

        websocket.send_text(
            json.dumps({"type": "stdin", "requestId": "i1", "sessionId": session_id, "data": "pwd\r"})
        )
        frames = []
        while not any(frame.get("type") == "exit" for frame in frames):
            frames.append(websocket.receive_json())

    data = "".join(frame["data"] for frame in frames if frame.get("type") == "data")
    assert str(project_dir) in data
    assert {"type": "stdin.resp", "requestId": "i1", "ok": True} in frames
