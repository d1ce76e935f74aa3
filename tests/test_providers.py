"""Tests for the shell, filesystem and HTTP providers."""

import io

import httpx
import pytest
from PIL import Image

from imgflow.core.artifacts import ImageArtifact
from imgflow.core.errors import NetworkError, ProviderError, ValidationError
from imgflow.core.registry import ImageGenerator, SaveProvider, TransformProvider
from imgflow.providers.filesystem import FilesystemSaveProvider
from imgflow.providers.http import HttpSaveProvider
from imgflow.providers.shell import ShellGenerator, ShellTransformProvider, format_command, run_command


def _png(width: int = 4, height: int = 3) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", (width, height)).save(buf, format="PNG")
    return buf.getvalue()


class TestFormatCommand:
    def test_values_are_quoted(self):
        assert format_command("draw {prompt}", {"prompt": "a cat; rm -rf /"}) == "draw 'a cat; rm -rf /'"

    def test_missing_keys_left_alone(self):
        assert format_command("draw {prompt} {size}", {"prompt": "x"}) == "draw x {size}"

    def test_none_values_left_alone(self):
        assert format_command("resize {width}", {"width": None}) == "resize {width}"


class TestShellProviders:
    def test_protocols(self):
        assert isinstance(ShellGenerator("true"), ImageGenerator)
        assert isinstance(ShellTransformProvider({}), TransformProvider)

    @pytest.mark.asyncio
    async def test_generator_reads_stdout(self):
        generator = ShellGenerator("printf %s {prompt}")
        image = await generator.generate({"prompt": "<svg/>"})
        assert image.bytes == b"<svg/>"
        assert image.mime == "image/svg+xml"

    @pytest.mark.asyncio
    async def test_transform_pipes_image_through(self):
        provider = ShellTransformProvider({"copy": "cat"})
        result = await provider.transform(ImageArtifact(bytes=_png(), mime="image/png"), "copy", {})
        assert result.bytes == _png()
        assert result.mime == "image/png"
        assert (result.width, result.height) == (4, 3)

    @pytest.mark.asyncio
    async def test_transform_unknown_operation(self):
        provider = ShellTransformProvider({"copy": "cat"})
        assert provider.operations == ["copy"]
        with pytest.raises(ValidationError, match="Unknown transform operation"):
            await provider.transform(ImageArtifact(bytes=b"x"), "blur", {})

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        with pytest.raises(ProviderError, match="exited with code 3") as exc_info:
            await run_command("echo oops >&2; exit 3", None, timeout=5)
        assert "oops" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_empty_output(self):
        with pytest.raises(ProviderError, match="no output"):
            await run_command("true", None, timeout=5)

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(ProviderError) as exc_info:
            await run_command("sleep 5", None, timeout=0.1)
        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.retryable


class TestFilesystemSave:
    def test_protocol(self):
        assert isinstance(FilesystemSaveProvider(), SaveProvider)

    @pytest.mark.asyncio
    async def test_save_relative_to_base_dir(self, tmp_path):
        provider = FilesystemSaveProvider(tmp_path)
        result = await provider.save(ImageArtifact(bytes=_png()), "nested/out.png")
        target = tmp_path / "nested" / "out.png"
        assert target.read_bytes() == _png()
        assert result.location == str(target)
        assert result.provider == "fs"
        assert result.size == len(_png())

    @pytest.mark.asyncio
    async def test_directory_destination_names_file_after_source(self, tmp_path):
        provider = FilesystemSaveProvider()
        artifact = ImageArtifact(bytes=b"GIF89a", mime="image/gif", source="gen_2")
        result = await provider.save(artifact, f"{tmp_path}/shots/")
        assert result.location == str(tmp_path / "shots" / "gen_2.gif")

    @pytest.mark.asyncio
    async def test_absolute_path_ignores_base_dir(self, tmp_path):
        provider = FilesystemSaveProvider(tmp_path / "base")
        target = tmp_path / "elsewhere.png"
        await provider.save(ImageArtifact(bytes=b"x"), str(target))
        assert target.exists()


class TestHttpSave:
    @pytest.mark.asyncio
    async def test_upload(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, headers={"location": "https://cdn.example.com/out.png"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = HttpSaveProvider(headers={"Authorization": "Bearer t"}, client=client)
        result = await provider.save(ImageArtifact(bytes=b"png"), "bucket.example.com/out.png", scheme="https")
        await provider.aclose()

        (request,) = requests
        assert request.method == "PUT"
        assert str(request.url) == "https://bucket.example.com/out.png"
        assert request.content == b"png"
        assert request.headers["content-type"] == "image/png"
        assert request.headers["authorization"] == "Bearer t"
        assert result.location == "https://cdn.example.com/out.png"
        assert result.metadata == {"status": 201}

    @pytest.mark.asyncio
    async def test_location_defaults_to_url(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        provider = HttpSaveProvider(method="post", client=client)
        result = await provider.save(ImageArtifact(bytes=b"png"), "example.com/up", scheme="http")
        assert result.location == "http://example.com/up"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(503, True), (429, True), (403, False)])
    async def test_http_error(self, status, retryable):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status)))
        provider = HttpSaveProvider(client=client)
        with pytest.raises(ProviderError) as exc_info:
            await provider.save(ImageArtifact(bytes=b"png"), "example.com/x.png")
        assert exc_info.value.code == "UPLOAD_FAILED"
        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = HttpSaveProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(NetworkError):
            await provider.save(ImageArtifact(bytes=b"png"), "example.com/x.png")
