# commands.py
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import UnknownCommand
from .model import CommandSpec

# ---------------------------------------------------------------------
# Command registry
# ---------------------------------------------------------------------
# Maps a (type, action) pair from a workflow definition onto:
#   - the argv passed to the external tool
#   - the resource kind the command creates (tracked on success)
#   - the resource kind the command releases (cleanup target)
#
# The set is closed: anything not registered raises UnknownCommand.
# Extend it with CommandRegistry.register().
# ---------------------------------------------------------------------

TRUTHY = {"1", "true", "yes", "on"}


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUTHY


@dataclass(frozen=True)
class ArgSpec:
    """
    Declarative argv layout for one command.

    prefix:     fixed leading words, e.g. ("bucket", "create")
    positional: param names appended in order when present
    flags:      (param, "--flag") pairs appended as "--flag value"
    switches:   (param, "--flag") pairs appended bare when the param is truthy
    """
    prefix: Tuple[str, ...]
    positional: Tuple[str, ...] = ()
    flags: Tuple[Tuple[str, str], ...] = ()
    switches: Tuple[Tuple[str, str], ...] = ()

    def build(self, params: Mapping[str, str]) -> List[str]:
        args = list(self.prefix)
        for name in self.positional:
            if params.get(name):
                args.append(params[name])
        for name, flag in self.flags:
            if params.get(name):
                args.extend([flag, params[name]])
        for name, flag in self.switches:
            if _truthy(params.get(name)):
                args.append(flag)
        return args


@dataclass(frozen=True)
class ResourceRule:
    """
    How to identify the resource a successful command created.

    The identifier comes from the first present param in id_params, then the
    first present key in the command's JSON output, then `fallback`.
    """
    kind: str
    id_params: Tuple[str, ...] = ()
    id_outputs: Tuple[str, ...] = ()
    keep_outputs: Tuple[str, ...] = ()   # extra JSON output keys stored on the resource
    fallback: Optional[Callable[[Mapping[str, str]], Optional[str]]] = None

    def identify(self, params: Mapping[str, str], data: Mapping[str, Any]) -> Optional[str]:
        for name in self.id_params:
            if params.get(name):
                return params[name]
        for key in self.id_outputs:
            val = data.get(key)
            if isinstance(val, (str, int)) and not isinstance(val, bool) and str(val):
                return str(val)
        if self.fallback is not None:
            return self.fallback(params)
        return None


@dataclass(frozen=True)
class CommandEntry:
    type: str
    action: str
    args: Optional[ArgSpec] = None
    build: Optional[Callable[[Mapping[str, str]], List[str]]] = None
    required: Tuple[str, ...] = ()
    creates: Optional[ResourceRule] = None
    releases: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return self.type, self.action

    def argv(self, params: Mapping[str, str]) -> List[str]:
        if self.build is not None:
            return self.build(params)
        if self.args is not None:
            return self.args.build(params)
        return [self.type, self.action]


class CommandRegistry:
    def __init__(self, entries: Iterable[CommandEntry] = ()):
        self._entries: Dict[Tuple[str, str], CommandEntry] = {}
        for e in entries:
            self.register(e)

    def register(self, entry: CommandEntry) -> None:
        self._entries[entry.key] = entry

    def get(self, type_: str, action: str) -> CommandEntry:
        try:
            return self._entries[(type_, action)]
        except KeyError:
            raise UnknownCommand(type=type_, action=action) from None

    def entry(self, spec: CommandSpec) -> CommandEntry:
        return self.get(spec.type, spec.action)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._entries

    def __iter__(self):
        return iter(sorted(self._entries.values(), key=lambda e: e.key))

    def build_args(self, spec: CommandSpec) -> List[str]:
        return self.entry(spec).argv(spec.params)

    def creates(self, spec: CommandSpec) -> Optional[ResourceRule]:
        return self.entry(spec).creates

    def releases(self, spec: CommandSpec) -> Optional[str]:
        return self.entry(spec).releases

    def missing_params(self, spec: CommandSpec) -> List[str]:
        return [p for p in self.entry(spec).required if not spec.params.get(p)]

    def resource_fields(self, kind: Optional[str] = None) -> set[str]:
        """Every attribute name a tracked resource (of `kind`, if given) may carry."""
        out: set[str] = set()
        for e in self._entries.values():
            if e.creates is None or (kind is not None and e.creates.kind != kind):
                continue
            out.update(e.creates.id_params)
            out.update(e.creates.id_outputs)
            out.update(e.creates.keep_outputs)
            if e.args is not None:
                out.update(e.args.positional)
                out.update(name for name, _ in e.args.flags)
        return out

    def releasing(self, kind: str) -> Optional[CommandEntry]:
        """The first registered command that releases `kind`, if any."""
        for e in self:
            if e.releases == kind:
                return e
        return None


# ---------------------------------------------------------------------
# Default command set for the `raps` tool
# ---------------------------------------------------------------------

def _custom_argv(params: Mapping[str, str]) -> List[str]:
    command = params.get("command", "")
    return [*shlex.split(command), *shlex.split(params.get("args", ""))]


def _file_name(params: Mapping[str, str]) -> Optional[str]:
    path = params.get("file_path")
    return PurePath(path).name if path else None


def _e(type_: str, action: str, prefix: Tuple[str, ...], **kw) -> CommandEntry:
    args = ArgSpec(
        prefix=prefix,
        positional=kw.pop("positional", ()),
        flags=kw.pop("flags", ()),
        switches=kw.pop("switches", ()),
    )
    return CommandEntry(type=type_, action=action, args=args, **kw)


DEFAULT_ENTRIES: List[CommandEntry] = [
    # auth
    _e("auth", "login", ("auth", "login")),
    _e("auth", "logout", ("auth", "logout")),
    _e("auth", "status", ("auth", "status")),
    _e("auth", "refresh", ("auth", "refresh")),

    # buckets
    _e(
        "bucket", "create", ("bucket", "create"),
        flags=(("bucket_name", "--key"), ("retention_policy", "--policy"), ("region", "--region")),
        required=("bucket_name",),
        creates=ResourceRule(kind="bucket", id_params=("bucket_name",), id_outputs=("bucketKey",)),
    ),
    _e(
        "bucket", "delete", ("bucket", "delete"),
        flags=(("bucket_name", "--key"),),
        switches=(("force", "--yes"),),
        required=("bucket_name",),
        releases="bucket",
    ),
    _e("bucket", "list", ("bucket", "list")),
    _e("bucket", "details", ("bucket", "details"), flags=(("bucket_name", "--key"),), required=("bucket_name",)),

    # objects
    _e(
        "object", "upload", ("object", "upload"),
        positional=("bucket_name", "file_path"),
        flags=(("object_key", "--key"),),
        switches=(("batch", "--batch"),),
        required=("bucket_name",),
        creates=ResourceRule(
            kind="object", id_params=("object_key",), id_outputs=("objectKey",), keep_outputs=("size",), fallback=_file_name,
        ),
    ),
    _e(
        "object", "download", ("object", "download"),
        positional=("bucket_name", "object_key"),
        flags=(("file_path", "--output"),),
        required=("bucket_name",),
    ),
    _e(
        "object", "delete", ("object", "delete"),
        positional=("bucket_name", "object_key"),
        required=("bucket_name",),
        releases="object",
    ),
    _e("object", "list", ("object", "list"), positional=("bucket_name",), required=("bucket_name",)),
    _e("object", "details", ("object", "details"), positional=("bucket_name", "object_key"), required=("bucket_name",)),
    _e(
        "object", "signed-url", ("object", "signed-url"),
        positional=("bucket_name", "object_key"),
        flags=(("expires_in", "--expires-in"),),
        required=("bucket_name",),
    ),

    # model derivative
    _e(
        "translate", "start", ("translate", "start"),
        positional=("urn",),
        flags=(("format", "--format"),),
        switches=(("wait", "--wait"),),
        creates=ResourceRule(kind="translation", id_params=("urn",), id_outputs=("urn",)),
    ),
    _e("translate", "status", ("translate", "status"), positional=("urn",)),
    _e("translate", "download", ("translate", "download"), positional=("urn",), flags=(("output_dir", "--output"),)),
    _e("translate", "manifest", ("translate", "manifest"), positional=("urn",)),

    # data management
    _e("data-management", "hub-list", ("hub", "list")),
    _e("data-management", "project-list", ("project", "list"), positional=("hub_id",)),
    _e("data-management", "folder-list", ("folder", "list"), positional=("project_id", "folder_id")),
    _e(
        "data-management", "folder-create", ("folder", "create"),
        positional=("project_id", "folder_name"),
        creates=ResourceRule(kind="folder", id_outputs=("id", "folder_id"), fallback=lambda p: p.get("folder_name")),
    ),
    _e("data-management", "item-versions", ("item", "versions"), positional=("project_id", "item_id")),
    _e("data-management", "item-bind", ("item", "bind"), positional=("project_id", "item_id")),

    # design automation
    _e("design-automation", "app-bundles", ("da", "appbundles"), positional=("app_bundle_id",)),
    _e("design-automation", "activities", ("da", "activities"), positional=("activity_id",)),
    _e(
        "design-automation", "work-item-run", ("da", "workitem", "run"),
        positional=("activity_id",),
        flags=(("input_file", "--input"), ("output_file", "--output")),
        creates=ResourceRule(kind="work-item", id_outputs=("id", "work_item_id")),
    ),
    _e("design-automation", "work-item-get", ("da", "workitem", "get"), positional=("work_item_id",)),

    # escape hatch
    CommandEntry(type="custom", action="run", build=_custom_argv, required=("command",)),
]


def default_registry() -> CommandRegistry:
    return CommandRegistry(DEFAULT_ENTRIES)
