"""Unit tests for the Docker runtime pieces that do not need an engine."""

from __future__ import annotations

import io
import tarfile

import pytest

from berth.config import DockerConfig, ResourceSpec
from berth.errors import ContainerUnavailableError, ValidationError
from berth.runtime.docker import (
    MANAGED_LABEL,
    USER_LABEL,
    DockerRuntime,
    _parse_memory,
    container_name,
    make_tar,
)


@pytest.fixture
def docker_runtime() -> DockerRuntime:
    return DockerRuntime(
        DockerConfig(
            socket="/var/run/docker.sock",
            resources=ResourceSpec(cpus=0.5, memory="512m", pids_limit=128),
            exposed_ports=[3000, 8080],
            manifest_excludes=["node_modules", ".git"],
        )
    )


class TestHelpers:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("1g", 1024**3), ("512m", 512 * 1024**2), ("64k", 64 * 1024), ("1000", 1000), ("1.5G", int(1.5 * 1024**3))],
    )
    def test_parse_memory(self, value: str, expected: int):
        assert _parse_memory(value) == expected

    def test_container_name_plain_id(self):
        assert container_name("42") == "user-42"
        assert container_name("alice_01", prefix="dev-") == "dev-alice_01"

    def test_container_name_unsafe_id_gets_hash(self):
        a = container_name("a/b")
        b = container_name("a:b")
        assert a.startswith("user-a-b-")
        assert a != b

    def test_make_tar_roundtrip(self):
        data = make_tar({"hello.txt": b"hi there"})
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            member = tar.next()
            assert member.name == "hello.txt"
            assert tar.extractfile(member).read() == b"hi there"


class TestDockerRuntimeConfig:
    def test_socket_path_becomes_unix_url(self, docker_runtime: DockerRuntime):
        assert docker_runtime._socket == "unix:///var/run/docker.sock"

    def test_container_config(self, docker_runtime: DockerRuntime):
        config = docker_runtime._container_config("u1")

        assert config["Labels"] == {MANAGED_LABEL: "true", USER_LABEL: "u1"}
        assert config["WorkingDir"] == "/workspace"
        host = config["HostConfig"]
        assert host["Memory"] == 512 * 1024**2
        assert host["NanoCpus"] == 500_000_000
        assert host["PidsLimit"] == 128
        assert host["PortBindings"] == {
            "3000/tcp": [{"HostPort": ""}],
            "8080/tcp": [{"HostPort": ""}],
        }
        assert "NetworkMode" not in host

    def test_find_prunes_excluded_directories(self, docker_runtime: DockerRuntime):
        argv = docker_runtime._find_argv("/workspace")
        assert argv[:4] == ["find", "/workspace", "-mindepth", "1"]
        assert argv[4:] == [
            "(", "-name", "node_modules", "-o", "-name", ".git", ")",
            "-prune", "-o", "-printf", "%P|%y|%T@\\n",
        ]

    def test_find_with_maxdepth(self, docker_runtime: DockerRuntime):
        argv = docker_runtime._find_argv("/workspace/src", maxdepth=1)
        assert argv[4:6] == ["-maxdepth", "1"]


class TestPathResolution:
    def test_relative_paths_join_workdir(self, docker_runtime: DockerRuntime):
        assert docker_runtime._resolve("src/app.js") == "/workspace/src/app.js"
        assert docker_runtime._resolve("") == "/workspace"

    def test_raw_spelling_is_kept_for_addressing(self, docker_runtime: DockerRuntime):
        assert docker_runtime._resolve("'a.txt'") == "/workspace/'a.txt'"

    def test_escape_is_rejected(self, docker_runtime: DockerRuntime):
        with pytest.raises(ValidationError):
            docker_runtime._resolve("../etc/passwd")

    async def test_operations_require_running_container(self, docker_runtime: DockerRuntime):
        with pytest.raises(ContainerUnavailableError):
            await docker_runtime.read_file("nobody", "a.txt")
        assert await docker_runtime.get_shell_stream("nobody") is None
        assert await docker_runtime.execute_command("nobody", "ls") is None
        assert await docker_runtime.inspect("nobody") is None
