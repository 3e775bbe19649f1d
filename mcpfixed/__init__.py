# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti, Manav Gupta

mcpfixed - fixed interfaces for MCP tools.

Register a remote MCP tool operation once as a named, versioned and
schema-validated fixed interface, then replay it with new parameters without
re-running capability discovery. OAuth2 protected endpoints are handled through
a PKCE authorization-code flow that pauses for manual browser intervention.
"""

__author__ = "Mihai Criveti, Manav Gupta"
__copyright__ = "Copyright 2025"
__license__ = "Apache 2.0"
__version__ = "0.3.0"
__description__ = "Fixed interface registry and OAuth flow engine for MCP tools"
__url__ = "https://github.com/IBM/mcp-context-forge"
__download_url__ = "https://github.com/IBM/mcp-context-forge"
__packages__ = ("mcpfixed",)
