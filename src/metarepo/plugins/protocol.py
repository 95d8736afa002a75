"""Wire protocol between the host and external plugins.

Messages are JSON objects, one per line, tagged by ``type``. The host
writes requests on the child's stdin and reads exactly one response per
request from its stdout.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .models import CommandNode, RuntimeConfig


@dataclass
class GetInfo:
    TYPE = "GetInfo"


@dataclass
class RegisterCommands:
    TYPE = "RegisterCommands"


@dataclass
class HandleCommand:
    TYPE = "HandleCommand"
    command: str
    args: List[str]
    config: RuntimeConfig


@dataclass
class InfoResponse:
    TYPE = "InfoResponse"
    name: str
    experimental: bool = False
    version: Optional[str] = None


@dataclass
class CommandsResponse:
    TYPE = "CommandsResponse"
    tree: CommandNode


@dataclass
class Success:
    TYPE = "Success"
    exit_code: int = 0
    message: Optional[str] = None


@dataclass
class Error:
    TYPE = "Error"
    message: str = ""


Request = Union[GetInfo, RegisterCommands, HandleCommand]
Response = Union[InfoResponse, CommandsResponse, Success, Error]

LEGACY_TAGS = {"Info": InfoResponse.TYPE, "Commands": CommandsResponse.TYPE}


def message_to_dict(msg: Union[Request, Response]) -> Dict[str, Any]:
    data: Dict[str, Any] = {"type": msg.TYPE}
    if isinstance(msg, HandleCommand):
        data["command"] = msg.command
        data["args"] = list(msg.args)
        data["config"] = msg.config.to_dict()
    elif isinstance(msg, InfoResponse):
        data["name"] = msg.name
        data["experimental"] = msg.experimental
        if msg.version is not None:
            data["version"] = msg.version
    elif isinstance(msg, CommandsResponse):
        data["tree"] = msg.tree.to_dict()
    elif isinstance(msg, Success):
        data["exitCode"] = msg.exit_code
        if msg.message is not None:
            data["message"] = msg.message
    elif isinstance(msg, Error):
        data["message"] = msg.message
    return data


def encode_message(msg: Union[Request, Response]) -> str:
    """Serialize one message as a single JSON line (trailing newline included)."""
    return json.dumps(message_to_dict(msg), separators=(",", ":")) + "\n"


def _commands_tree(data: Dict[str, Any]) -> CommandNode:
    if "tree" in data:
        return CommandNode.from_dict(data["tree"])
    # Older plugins send a flat list of top-level commands
    commands = data.get("commands")
    if not isinstance(commands, list):
        raise ValueError("CommandsResponse requires 'tree' or a 'commands' list")
    return CommandNode(name="", children=[CommandNode.from_dict(c) for c in commands])


def decode_message(line: str) -> Union[Request, Response]:
    """Parse one line into a message.

    Raises:
        ValueError: if the line is not JSON, has no known ``type`` tag, or
            lacks a required field. Unknown fields are ignored.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("message must be a JSON object")

    tag = data.get("type")
    tag = LEGACY_TAGS.get(tag, tag)

    if tag == GetInfo.TYPE:
        return GetInfo()
    if tag == RegisterCommands.TYPE:
        return RegisterCommands()
    if tag == HandleCommand.TYPE:
        args = data.get("args", [])
        if not isinstance(args, list):
            raise ValueError("HandleCommand 'args' must be a list")
        return HandleCommand(
            command=str(data.get("command", "")),
            args=[str(a) for a in args],
            config=RuntimeConfig.from_dict(data.get("config")),
        )
    if tag == InfoResponse.TYPE:
        name = data.get("name")
        if not isinstance(name, str):
            raise ValueError("InfoResponse requires a 'name' string")
        version = data.get("version")
        return InfoResponse(
            name=name,
            experimental=bool(data.get("experimental", False)),
            version=str(version) if version is not None else None,
        )
    if tag == CommandsResponse.TYPE:
        return CommandsResponse(tree=_commands_tree(data))
    if tag == Success.TYPE:
        exit_code = data.get("exitCode", data.get("exit_code", 0))
        if not isinstance(exit_code, int) or isinstance(exit_code, bool):
            raise ValueError("Success 'exitCode' must be an integer")
        if not 0 <= exit_code <= 255:
            raise ValueError(f"Success 'exitCode' must be between 0 and 255, got {exit_code}")
        message = data.get("message")
        return Success(exit_code=exit_code, message=str(message) if message is not None else None)
    if tag == Error.TYPE:
        return Error(message=str(data.get("message", "")))

    raise ValueError(f"unknown message type: {data.get('type')!r}")
