"""
בדיקות ל-WebSocket של הצ'אט: /api/chat/ws

ה-TestClient הסינכרוני מריץ את האפליקציה ב-event loop משלו, ולכן משתמשים
כאן ב-SQLite על קובץ עם NullPool במקום ב-db_session המשותף, וזורעים נתונים
דרך ה-portal של ה-client.
"""
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.api.dependencies.services import get_moderation, get_notifications, get_rail
from app.core.config import settings
from app.db.database import get_db, utcnow
from app.db.models.stream import Stream
from app.db.models.user import User, UserRole
from app.main import app
from app.realtime.session_registry import get_session_registry


@pytest.fixture
def ws_client(tmp_path, fake_rail, fake_moderation, fake_notifications):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat_ws.db'}", poolclass=NullPool)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rail] = lambda: fake_rail
    app.dependency_overrides[get_moderation] = lambda: fake_moderation
    app.dependency_overrides[get_notifications] = lambda: fake_notifications

    # startup יוצר את הטבלאות על ה-engine של הבדיקה
    with patch("app.main.engine", engine), TestClient(app) as client:
        client.session_maker = session_maker
        yield client

    app.dependency_overrides.clear()


def _seed_stream(client: TestClient) -> tuple[int, int]:
    """יוצר מארח, צופה ושידור חי. מחזיר (stream_id, viewer_id)"""

    async def _seed():
        async with client.session_maker() as session:
            host = User(username="ws_host", role=UserRole.CREATOR)
            viewer = User(username="ws_viewer", role=UserRole.VIEWER)
            session.add_all([host, viewer])
            await session.flush()
            stream = Stream(
                host_id=host.id,
                title="ws stream",
                is_live=True,
                allow_chat=True,
                allow_gifts=True,
                started_at=utcnow(),
            )
            session.add(stream)
            await session.commit()
            return stream.id, viewer.id

    return client.portal.call(_seed)


class TestChatWebSocket:

    @pytest.mark.unit
    def test_connect_announces_session(self, ws_client: TestClient) -> None:
        stream_id, _ = _seed_stream(ws_client)

        with ws_client.websocket_connect(f"/api/chat/ws?stream_id={stream_id}") as ws:
            hello = ws.receive_json()

            assert hello["type"] == "CONNECTED"
            assert hello["stream_id"] == stream_id
            assert hello["viewers"] == 1
            assert len(hello["session_id"]) == 32

    @pytest.mark.unit
    def test_ping_pong(self, ws_client: TestClient) -> None:
        stream_id, _ = _seed_stream(ws_client)

        with ws_client.websocket_connect(f"/api/chat/ws?stream_id={stream_id}") as ws:
            ws.receive_json()

            ws.send_text("PING")
            assert ws.receive_json() == {"type": "PONG"}

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "PONG"}

    @pytest.mark.unit
    def test_message_reaches_connected_viewer(self, ws_client: TestClient) -> None:
        stream_id, viewer_id = _seed_stream(ws_client)

        with ws_client.websocket_connect(f"/api/chat/ws?stream_id={stream_id}") as ws:
            ws.receive_json()

            response = ws_client.post(
                f"/api/chat/{stream_id}/messages", json={"userId": viewer_id, "content": "hello room"}
            )
            assert response.status_code == 201

            frame = ws.receive_json()
            assert frame["type"] == "message"
            assert frame["seq"] == 1
            assert frame["stream_id"] == stream_id
            assert frame["data"]["content"] == "hello room"

    @pytest.mark.unit
    def test_deleted_message_is_retracted(self, ws_client: TestClient) -> None:
        stream_id, viewer_id = _seed_stream(ws_client)

        with ws_client.websocket_connect(f"/api/chat/ws?stream_id={stream_id}") as ws:
            ws.receive_json()
            sent = ws_client.post(
                f"/api/chat/{stream_id}/messages", json={"userId": viewer_id, "content": "regret"}
            ).json()["message"]
            ws.receive_json()

            ws_client.delete(
                f"/api/chat/{stream_id}/messages/{sent['id']}", params={"acting_user_id": viewer_id}
            )

            frame = ws.receive_json()
            assert frame["type"] == "retraction"
            assert frame["seq"] == 2
            assert frame["data"]["message_id"] == sent["id"]

    @pytest.mark.unit
    def test_unknown_stream_is_closed(self, ws_client: TestClient) -> None:
        with ws_client.websocket_connect("/api/chat/ws?stream_id=999") as ws:
            error = ws.receive_json()
            assert error["type"] == "ERROR"
            assert error["error"]["code"] == "stream_not_found"

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 4404

    @pytest.mark.unit
    def test_silent_client_hits_heartbeat_timeout(self, ws_client: TestClient, monkeypatch) -> None:
        monkeypatch.setattr(settings, "CHAT_HEARTBEAT_TIMEOUT_SECONDS", 0.3)
        stream_id, _ = _seed_stream(ws_client)

        with ws_client.websocket_connect(f"/api/chat/ws?stream_id={stream_id}") as ws:
            ws.receive_json()

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 4408

        assert ws_client.portal.call(get_session_registry().viewer_count, stream_id) == 0
