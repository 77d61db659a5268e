"""mxhost - Sandboxed plugin host for Matrix messenger clients.

mxhost lets untrusted extension code observe a user's messaging activity
and ask the host to perform a restricted set of privileged actions without
ever touching credentials, the network client, or storage directly.

Key modules:

- :mod:`mxhost.host` - PluginHost coordinator (accounts, plugins, events, commands)
- :mod:`mxhost.plugins` - Manifests, permissions, integrity, sandbox bridge and runtime
- :mod:`mxhost.commands` - Case-insensitive command registry
- :mod:`mxhost.storage` - Per-plugin storage namespaces
- :mod:`mxhost.timeline` - Timeline event forwarding into the host
- :mod:`mxhost.config` - YAML configuration
"""

__version__ = "0.1.0"
