"""
Yellowstone Geyser gRPC binding.

Message classes and the service stub are built at import time from the
.proto files shipped in relay/protos (grpc.protos_and_services, provided by
grpcio-tools), so no generated code is checked in.
"""
import logging
import sys
from pathlib import Path
from urllib.parse import urlparse

import grpc
from google.protobuf import json_format

logger = logging.getLogger("geyser")

# .proto paths are resolved against sys.path entries
_PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if _PROJECT_ROOT not in sys.path:
    sys.path.append(_PROJECT_ROOT)

geyser_pb2, geyser_pb2_grpc = grpc.protos_and_services("relay/protos/geyser.proto")

# Geyser frames can carry full account data; don't cap them at the 4MB default
CHANNEL_OPTIONS = [
    ("grpc.max_receive_message_length", 64 * 1024 * 1024),
    ("grpc.keepalive_time_ms", 30_000),
    ("grpc.keepalive_timeout_ms", 10_000),
]


def parse_endpoint(endpoint: str) -> tuple[str, bool]:
    """'https://host:443' -> ('host:443', True). Plain http means no TLS."""
    if "://" not in endpoint:
        return endpoint, True
    url = urlparse(endpoint)
    secure = url.scheme != "http"
    port = url.port or (443 if secure else 80)
    return f"{url.hostname}:{port}", secure


def open_channel(endpoint: str, token: str | None) -> grpc.aio.Channel:
    target, secure = parse_endpoint(endpoint)
    if not secure:
        logger.warning(f"Opening plaintext channel to {target}")
        return grpc.aio.insecure_channel(target, options=CHANNEL_OPTIONS)

    credentials = grpc.ssl_channel_credentials()
    if token:
        credentials = grpc.composite_channel_credentials(
            credentials,
            grpc.metadata_call_credentials(
                lambda context, callback: callback((("x-token", token),), None)
            ),
        )
    return grpc.aio.secure_channel(target, credentials, options=CHANNEL_OPTIONS)


def call_metadata(endpoint: str, token: str | None) -> tuple | None:
    """Per-call auth metadata. TLS channels already carry it as call credentials."""
    _, secure = parse_endpoint(endpoint)
    if secure or not token:
        return None
    return (("x-token", token),)


def make_stub(channel: grpc.aio.Channel):
    return geyser_pb2_grpc.GeyserStub(channel)


def encode_request(request: dict):
    """Render a request mapping (camelCase keys) as a SubscribeRequest."""
    return json_format.ParseDict(request, geyser_pb2.SubscribeRequest())


def version_request():
    return geyser_pb2.GetVersionRequest()
