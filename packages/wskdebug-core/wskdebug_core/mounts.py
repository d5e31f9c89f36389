"""Map local sources onto the runtime container.

The layout is decided from the path structure alone:

==================  =========================================  ==========
source              example                                    layout
==================  =========================================  ==========
file at the root    ``action.js``                              flat
file below root     ``lib/action.js``                          nested
directory           ``.`` (``package.json`` main / index.js)   packaged
any + packaged      zip action or ``--packaged``               packaged
==================  =========================================  ==========

The root is the working directory (or an explicit ``root``).  For a nested
entry the whole root is mounted, so ``require('../util')`` from
``lib/action.js`` finds the same file locally as in the deployed bundle.
"""

from __future__ import annotations

import json
import logging
import os
import posixpath

from wskdebug_core.errors import UnsupportedLayoutError
from wskdebug_core.models import Layout, MountDescriptor
from wskdebug_core.runtimes.base import RuntimeKind

logger = logging.getLogger(__name__)


class SourceMountResolver:
    """Resolves a source path into a :class:`MountDescriptor`."""

    def __init__(self, runtime: RuntimeKind) -> None:
        self._runtime = runtime

    def resolve(
        self,
        source_path: str,
        *,
        packaged: bool = False,
        root: str | None = None,
    ) -> MountDescriptor:
        root = os.path.abspath(root or os.getcwd())
        path = os.path.abspath(os.path.join(root, source_path))

        if os.path.isdir(path):
            entry = self._directory_entry(path)
            return self._descriptor(path, entry, Layout.PACKAGED)

        if not os.path.isfile(path):
            raise UnsupportedLayoutError(f"Source file {source_path} not found (root {root})")

        rel = os.path.relpath(path, root)
        if rel.startswith(os.pardir + os.sep) or rel == os.pardir:
            # Outside the root: mount the file's own directory.
            root = os.path.dirname(path)
            rel = os.path.basename(path)

        if packaged:
            layout = Layout.PACKAGED
        elif os.sep in rel:
            layout = Layout.NESTED
        else:
            layout = Layout.FLAT

        return self._descriptor(root, rel, layout)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _directory_entry(self, directory: str) -> str:
        """Entry of a packaged directory: manifest ``main`` or the default file."""
        manifest = self._runtime.package_manifest
        if manifest:
            manifest_path = os.path.join(directory, manifest)
            if os.path.isfile(manifest_path):
                try:
                    with open(manifest_path, encoding="utf-8") as f:
                        main = json.load(f).get("main")
                except (json.JSONDecodeError, OSError) as exc:
                    raise UnsupportedLayoutError(
                        f"Cannot read {manifest_path}: {exc}"
                    ) from exc
                if main:
                    if not os.path.isfile(os.path.join(directory, main)):
                        raise UnsupportedLayoutError(
                            f"{manifest} main '{main}' not found in {directory}"
                        )
                    return os.path.normpath(main)

        default = self._runtime.default_entry
        if os.path.isfile(os.path.join(directory, default)):
            return default

        raise UnsupportedLayoutError(
            f"No entry file in {directory} (expected {manifest or default} "
            f"with a 'main' field, or {default})"
        )

    def _descriptor(self, root: str, entry: str, layout: Layout) -> MountDescriptor:
        mount = MountDescriptor(
            host_root=root,
            container_root=self._runtime.code_mount,
            entry=posixpath.join(*entry.split(os.sep)),
            layout=layout,
        )
        logger.info(
            "Mounting %s at %s (%s layout, entry %s)",
            mount.host_root, mount.container_root, mount.layout.value, mount.entry,
        )
        return mount
