"""
Unit tests for upload staging and the streaming response.
"""

import contextlib
import io
import os

import anyio
import httpx
import pytest
import pytest_asyncio
from starlette.datastructures import UploadFile

from service_gateway.app.adapters.backend_client import BackendImage
from service_gateway.app.domain.upload_pipeline import (
    StagedImageResponse,
    StagedUpload,
    sanitize_filename,
    staged_filename,
)
from shared.errors import StorageError


@pytest.mark.parametrize("original,expected", [
    ("cat.png", "cat.png"),
    ("../../etc/passwd", "passwd"),
    ("C:\\Users\\bob\\photo.jpg", "photo.jpg"),
    ("/abs/path/pic.gif", "pic.gif"),
    ("..", "upload"),
    ("", "upload"),
    (None, "upload"),
    ("dir/", "upload"),
    ("nul\x00byte.png", "nulbyte.png"),
])
def test_sanitize_filename(original, expected):
    assert sanitize_filename(original) == expected


def test_sanitize_filename_truncates_long_names():
    name = sanitize_filename("a" * 400 + ".jpeg")
    assert len(name) <= 150
    assert name.endswith(".jpeg")


def test_staged_filename_shape():
    name = staged_filename("../x/cat.png")
    prefix, timestamp, rest = name.split("_", 2)
    assert prefix == "img"
    assert timestamp.isdigit()
    assert rest == "cat.png"


def _upload(data: bytes, filename: str = "cat.png") -> UploadFile:
    return UploadFile(io.BytesIO(data), filename=filename)


class TestStagedUpload:
    """Staging file lifecycle."""

    @pytest.mark.asyncio
    async def test_write_and_release(self, tmp_path):
        staged = StagedUpload(str(tmp_path), "cat.png")
        written = await staged.write_from(_upload(b"0123456789"))

        assert written == 10
        assert staged.size == 10
        assert os.path.dirname(staged.path) == str(tmp_path)
        with open(staged.path, "rb") as fh:
            assert fh.read() == b"0123456789"
        assert staged.reference == "local:///" + staged.filename

        staged.release()
        assert staged.released
        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, tmp_path):
        staged = StagedUpload(str(tmp_path), "cat.png")
        await staged.write_from(_upload(b"x"))
        staged.release()
        staged.release()
        assert os.listdir(tmp_path) == []

    def test_release_before_create_touches_nothing(self, tmp_path):
        staged = StagedUpload(str(tmp_path), "cat.png")
        with open(staged.path, "wb") as fh:
            fh.write(b"someone else's file")

        staged.release()

        assert os.path.exists(staged.path)

    @pytest.mark.asyncio
    async def test_name_collision_picks_new_name(self, tmp_path):
        staged = StagedUpload(str(tmp_path), "cat.png")
        taken = staged.path
        with open(taken, "wb") as fh:
            fh.write(b"existing")

        await staged.write_from(_upload(b"new"))

        assert staged.path != taken
        with open(taken, "rb") as fh:
            assert fh.read() == b"existing"

    @pytest.mark.asyncio
    async def test_missing_staging_dir_is_storage_error(self, tmp_path):
        staged = StagedUpload(str(tmp_path / "nope"), "cat.png")
        with pytest.raises(StorageError) as exc_info:
            await staged.write_from(_upload(b"x"))
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Failed to save file"

    @pytest.mark.asyncio
    async def test_multi_chunk_upload_staged_in_full(self, tmp_path):
        staged = StagedUpload(str(tmp_path), "cat.png")
        data = b"x" * (3 * 1024 * 1024 + 17)

        await staged.write_from(_upload(data))

        assert os.path.getsize(staged.path) == len(data)
        staged.release()
        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_read_failure_is_storage_error(self, tmp_path):
        class FailingUpload:
            filename = "cat.png"

            async def read(self, size=-1):
                raise OSError("disk gone")

        staged = StagedUpload(str(tmp_path), "cat.png")
        with pytest.raises(StorageError) as exc_info:
            await staged.write_from(FailingUpload())
        assert exc_info.value.message == "Failed to write file"

        staged.release()
        assert os.listdir(tmp_path) == []


class TestStagedImageResponse:
    """The response owns the staged file until streaming ends."""

    @pytest_asyncio.fixture
    async def staged(self, tmp_path):
        staged = StagedUpload(str(tmp_path), "cat.png")
        await staged.write_from(_upload(b"0123456789"))
        return staged

    def _scope(self):
        return {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.4"},
            "http_version": "1.1",
            "method": "POST",
            "path": "/",
            "headers": [],
        }

    def _image(self):
        upstream = httpx.Response(200, headers={"Content-Length": "5"}, stream=httpx.ByteStream(b"WEBP!"))
        return upstream, BackendImage(upstream, "image/webp")

    @pytest.mark.asyncio
    async def test_streams_then_releases(self, staged):
        upstream, image = self._image()
        completed = []
        sent = []
        response = StagedImageResponse(image, staged, write_timeout=5, on_complete=lambda *args: completed.append(args))

        async def receive():
            await anyio.sleep_forever()

        async def send(message):
            sent.append(message)

        await response(self._scope(), receive, send)

        assert sent[0]["status"] == 200
        headers = dict(sent[0]["headers"])
        assert headers[b"content-type"] == b"image/webp"
        assert headers[b"content-length"] == b"5"
        assert b"".join(m.get("body", b"") for m in sent[1:]) == b"WEBP!"
        assert completed == [(200, "ok")]
        assert staged.released and not os.path.exists(staged.path)
        assert upstream.is_closed

    @pytest.mark.asyncio
    async def test_client_disconnect_still_releases(self, staged):
        upstream, image = self._image()
        completed = []
        response = StagedImageResponse(image, staged, write_timeout=5, on_complete=lambda *args: completed.append(args))

        async def receive():
            return {"type": "http.disconnect"}

        async def send(message):
            if message["type"] == "http.response.body":
                raise OSError("connection reset by peer")

        with contextlib.suppress(Exception):
            await response(self._scope(), receive, send)

        assert staged.released and not os.path.exists(staged.path)
        assert completed == [(200, "ok")]
        assert upstream.is_closed

    @pytest.mark.asyncio
    async def test_write_timeout_releases(self, staged):
        upstream, image = self._image()
        response = StagedImageResponse(image, staged, write_timeout=0.05, on_complete=lambda status, outcome: None)

        async def receive():
            await anyio.sleep_forever()

        async def send(message):
            await anyio.sleep_forever()

        await response(self._scope(), receive, send)

        assert staged.released and not os.path.exists(staged.path)
        assert upstream.is_closed

    @pytest.mark.asyncio
    async def test_backend_stream_failure_is_recorded(self, staged):
        class BrokenStream(httpx.AsyncByteStream):
            async def __aiter__(self):
                yield b"WE"
                raise httpx.ReadError("connection reset")

        upstream = httpx.Response(200, stream=BrokenStream())
        completed = []
        response = StagedImageResponse(
            BackendImage(upstream, "image/webp"),
            staged,
            write_timeout=5,
            on_complete=lambda *args: completed.append(args),
        )

        async def receive():
            await anyio.sleep_forever()

        async def send(message):
            pass

        with pytest.raises(httpx.ReadError):
            await response(self._scope(), receive, send)

        assert completed == [(502, "backend_stream_error")]
        assert staged.released and not os.path.exists(staged.path)
