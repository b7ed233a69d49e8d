"""Local-socket JSON-RPC transport shared by host and bridge."""

from hostrpc.protocol.client import PendingRequest, RpcClient
from hostrpc.protocol.connection import ConnectionState, FramedConnection
from hostrpc.protocol.framing import Frame, LineFramer, decode_frame, encode_frame
from hostrpc.protocol.models import JsonRpcError, JsonRpcRequest, JsonRpcResponse

__all__ = [
    "ConnectionState",
    "Frame",
    "FramedConnection",
    "JsonRpcError",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "LineFramer",
    "PendingRequest",
    "RpcClient",
    "decode_frame",
    "encode_frame",
]
