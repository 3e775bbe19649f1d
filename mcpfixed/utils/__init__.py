# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/utils/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Utility helpers for mcpfixed.
"""
