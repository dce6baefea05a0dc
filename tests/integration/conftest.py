# tests/integration/conftest.py - v1
"""Shared fixtures for integration tests using testcontainers.

Container lifecycle:
- session scope: containers start once per pytest session
- function scope: fresh key prefix / bucket per test for isolation

Containers are reached through their bridge network IP and internal
port, which also works for docker-outside-of-docker devcontainers where
localhost:mapped_port is unreachable.
"""

from __future__ import annotations

import logging
import time
import uuid

import pytest

logger = logging.getLogger(__name__)


# ── Pytest markers ──────────────────────────────────────────────

def pytest_configure(config):
    config.addinivalue_line("markers", "redis: marks tests requiring Redis container")
    config.addinivalue_line("markers", "minio: marks tests requiring MinIO container")


# =====================================================================
#  DEVCONTAINER NETWORKING HELPERS
# =====================================================================

def _get_container_bridge_ip(container, max_attempts: int = 10) -> str:
    """Get container bridge network IP with retries."""
    for attempt in range(max_attempts):
        try:
            wrapped = container.get_wrapped_container()
            wrapped.reload()
            networks = wrapped.attrs.get("NetworkSettings", {}).get("Networks", {})
            for net_name, net_info in networks.items():
                ip = net_info.get("IPAddress", "")
                if ip:
                    logger.info(
                        "Container %s IP: %s (network: %s, attempt %d)",
                        wrapped.short_id, ip, net_name, attempt + 1,
                    )
                    return ip
            logger.debug("Container IP empty, attempt %d/%d", attempt + 1, max_attempts)
        except Exception as e:
            logger.debug("Error getting IP (attempt %d): %s", attempt + 1, e)
        time.sleep(0.5)

    raise RuntimeError(
        f"Could not obtain container bridge IP after {max_attempts} attempts"
    )


def _docker_available() -> bool:
    """Check if Docker daemon is reachable."""
    try:
        import docker
        client = docker.from_env()
        client.ping()
        return True
    except Exception:
        return False


# =====================================================================
#  REDIS
# =====================================================================

REDIS_IMAGE = "redis:7-alpine"
REDIS_INTERNAL_PORT = 6379


@pytest.fixture(scope="session")
def redis_container():
    if not _docker_available():
        pytest.skip("Docker not available")

    from testcontainers.core.container import DockerContainer
    from testcontainers.core.waiting_utils import wait_for_logs

    container = DockerContainer(REDIS_IMAGE).with_exposed_ports(REDIS_INTERNAL_PORT)
    container.start()
    wait_for_logs(container, predicate=r"Ready to accept connections", timeout=60)

    ip = _get_container_bridge_ip(container)
    logger.info("Redis ready at %s:%d", ip, REDIS_INTERNAL_PORT)
    yield {"host": ip, "port": REDIS_INTERNAL_PORT}
    container.stop()


@pytest.fixture
def redis_state_store(redis_container):
    import redis

    from chunkzip.state.redis_state_store import RedisStateStore

    client = redis.Redis(
        host=redis_container["host"],
        port=redis_container["port"],
        decode_responses=True,
    )
    prefix = f"test:{uuid.uuid4().hex[:8]}"
    store = RedisStateStore(key_prefix=prefix, client=client)
    yield store
    for key in client.scan_iter(match=f"{prefix}:*"):
        client.delete(key)
    store.close()


# =====================================================================
#  MINIO (S3-compatible)
# =====================================================================

MINIO_IMAGE = "minio/minio:latest"
MINIO_INTERNAL_PORT = 9000
MINIO_ACCESS_KEY = "minioadmin"
MINIO_SECRET_KEY = "minioadmin"


@pytest.fixture(scope="session")
def minio_container():
    if not _docker_available():
        pytest.skip("Docker not available")

    from testcontainers.core.container import DockerContainer
    from testcontainers.core.waiting_utils import wait_for_logs

    container = (
        DockerContainer(MINIO_IMAGE)
        .with_exposed_ports(MINIO_INTERNAL_PORT)
        .with_env("MINIO_ROOT_USER", MINIO_ACCESS_KEY)
        .with_env("MINIO_ROOT_PASSWORD", MINIO_SECRET_KEY)
        .with_command("server /data")
    )
    container.start()
    wait_for_logs(container, predicate=r"API:", timeout=60)
    time.sleep(1)

    ip = _get_container_bridge_ip(container)
    logger.info("MinIO ready at %s:%d", ip, MINIO_INTERNAL_PORT)
    yield {"endpoint_url": f"http://{ip}:{MINIO_INTERNAL_PORT}"}
    container.stop()


@pytest.fixture(scope="session")
def minio_client(minio_container):
    import boto3
    from botocore.config import Config as BotoConfig

    return boto3.client(
        "s3",
        endpoint_url=minio_container["endpoint_url"],
        aws_access_key_id=MINIO_ACCESS_KEY,
        aws_secret_access_key=MINIO_SECRET_KEY,
        region_name="us-east-1",
        config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
    )


@pytest.fixture
def s3_store(minio_client):
    from chunkzip.storage.s3_store import S3ObjectStore

    bucket = f"test-{uuid.uuid4().hex[:12]}"
    minio_client.create_bucket(Bucket=bucket)
    store = S3ObjectStore(bucket=bucket, read_chunk_size=64 * 1024, client=minio_client)
    yield store
    response = minio_client.list_objects_v2(Bucket=bucket)
    for obj in response.get("Contents", []):
        minio_client.delete_object(Bucket=bucket, Key=obj["Key"])
    for upload in minio_client.list_multipart_uploads(Bucket=bucket).get("Uploads", []):
        minio_client.abort_multipart_upload(Bucket=bucket, Key=upload["Key"], UploadId=upload["UploadId"])
    minio_client.delete_bucket(Bucket=bucket)
