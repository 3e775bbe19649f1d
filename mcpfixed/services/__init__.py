# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Services for mcpfixed.
This package implements the core services:
- FixedInterfaceService: Registers, validates and executes fixed interfaces
- OAuthManager: Drives the PKCE authorization-code flow and token refresh
- PerformanceService: Records and aggregates execution metrics
- EncryptionService: Encrypts credentials under the local master key
"""
