"""Node.js runtime kinds (``nodejs``, ``nodejs:10`` ... ``nodejs:20``).

The OpenWhisk Node.js runtime image serves ``/init`` and ``/run`` on port
8080 from ``/nodejsAction/app.js``.  We start the same server with
``--inspect`` so a debugger can attach on port 9229.

Local sources are not sent as code.  ``/init`` gets a small loader instead
that reads the mounted file on every activation, so edits take effect
without re-initialising the runtime:

* plain layouts evaluate the file as a script, with a ``require`` rooted at
  the file so relative requires resolve as they would on the platform;
* the packaged layout ``require``\\ s the entry after dropping the mount from
  the module cache, which is how a zipped action is loaded remotely.
"""

from __future__ import annotations

import json

from wskdebug_core.models import Layout, MountDescriptor
from wskdebug_core.runtimes.base import RuntimeKind

_INSPECT_PORT = 9229

_IMAGES = {
    "nodejs": "openwhisk/action-nodejs-v10",
    "nodejs:default": "openwhisk/action-nodejs-v18",
    "nodejs:10": "openwhisk/action-nodejs-v10",
    "nodejs:12": "openwhisk/action-nodejs-v12",
    "nodejs:14": "openwhisk/action-nodejs-v14",
    "nodejs:16": "openwhisk/action-nodejs-v16",
    "nodejs:18": "openwhisk/action-nodejs-v18",
    "nodejs:20": "openwhisk/action-nodejs-v20",
}

_SCRIPT_LOADER = """\
const __wskdebugFs = require('fs');
const __wskdebugPath = require('path');
const __wskdebugModule = require('module');

function main(params) {
    const file = %(file)s;
    const source = __wskdebugFs.readFileSync(file, 'utf8');
    const mod = { exports: {} };
    // newline before the return keeps a trailing line comment harmless
    const load = new Function(
        'require', 'module', 'exports', '__filename', '__dirname',
        source + '\\nreturn typeof %(main)s === "function" ? %(main)s : module.exports.%(main)s;'
    );
    const entry = load(
        __wskdebugModule.createRequire(file), mod, mod.exports,
        file, __wskdebugPath.dirname(file)
    );
    return entry(params);
}
"""

_PACKAGE_LOADER = """\
function main(params) {
    const root = %(root)s;
    Object.keys(require.cache)
        .filter(key => key.startsWith(root))
        .forEach(key => delete require.cache[key]);
    const mod = require(%(file)s);
    const entry = typeof mod === 'function' ? mod : mod.%(main)s;
    return entry(params);
}
"""


class NodeRuntime(RuntimeKind):
    """Strategy for the OpenWhisk Node.js runtimes."""

    @property
    def name(self) -> str:
        return "nodejs"

    @property
    def debug_port(self) -> int:
        return _INSPECT_PORT

    @property
    def debug_protocol(self) -> str | None:
        return "cdp"

    @property
    def workdir(self) -> str | None:
        return "/nodejsAction"

    @property
    def package_manifest(self) -> str | None:
        return "package.json"

    def default_images(self) -> dict[str, str]:
        return dict(_IMAGES)

    def get_command(self) -> list[str]:
        return [
            "node",
            "--expose-gc",
            f"--inspect=0.0.0.0:{self.debug_port}",
            "app.js",
        ]

    def get_init_code(self, mount: MountDescriptor, main: str = "main") -> str:
        if not main.isidentifier():
            raise ValueError(f"invalid entry function name: {main!r}")

        if mount.layout is Layout.PACKAGED:
            return _PACKAGE_LOADER % {
                "root": json.dumps(mount.container_root.rstrip("/") + "/"),
                "file": json.dumps(mount.container_entry),
                "main": main,
            }
        return _SCRIPT_LOADER % {
            "file": json.dumps(mount.container_entry),
            "main": main,
        }
