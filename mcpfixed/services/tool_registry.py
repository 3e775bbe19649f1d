# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/tool_registry.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Tool registry.

The interface registry and the OAuth engine only need ``resolve(tool_id)``,
which maps a tool id (or unique tool name) to its endpoint, transport,
capabilities and static credential. ``DbToolRegistry`` implements it on top of
the ``tools`` table and also offers the small amount of tool management the
command surface needs.
"""

# Standard
from abc import ABC, abstractmethod
import logging
from typing import List, Optional

# Third-Party
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

# First-Party
from mcpfixed.db import Tool as DbTool
from mcpfixed.errors import ConflictError, NotFoundError
from mcpfixed.schemas import AuthCredential, ToolCreate, ToolEndpoint, ToolRead
from mcpfixed.services.encryption_service import EncryptionService, get_encryption_service

logger = logging.getLogger(__name__)


class ToolRegistry(ABC):
    """Maps tool ids to reachable endpoints."""

    @abstractmethod
    def resolve(self, db: Session, tool_id: str) -> ToolEndpoint:
        """Resolve a tool.

        Args:
            db: Database session.
            tool_id: Tool id or unique name.

        Returns:
            ToolEndpoint: Endpoint, transport, capabilities and credential.

        Raises:
            NotFoundError: If the tool is unknown.
        """


class DbToolRegistry(ToolRegistry):
    """Tool registry backed by the ``tools`` table."""

    def __init__(self, encryption: Optional[EncryptionService] = None):
        """Create the registry.

        Args:
            encryption: Cipher for static credentials (defaults to the shared service).
        """
        self._encryption = encryption

    @property
    def encryption(self) -> EncryptionService:
        """Cipher used for static credentials.

        Returns:
            EncryptionService: The configured or shared service.
        """
        if self._encryption is None:
            self._encryption = get_encryption_service()
        return self._encryption

    def _get(self, db: Session, tool_id: str) -> DbTool:
        """Load a tool by id, falling back to its unique name.

        Args:
            db: Database session.
            tool_id: Tool id or name.

        Returns:
            DbTool: The row.

        Raises:
            NotFoundError: If no tool matches.
        """
        tool = db.get(DbTool, tool_id)
        if tool is None:
            tool = db.execute(select(DbTool).where(DbTool.name == tool_id)).scalar_one_or_none()
        if tool is None:
            raise NotFoundError(f"Tool not found: {tool_id}")
        return tool

    def resolve(self, db: Session, tool_id: str) -> ToolEndpoint:
        """Resolve a tool to its endpoint.

        Args:
            db: Database session.
            tool_id: Tool id or unique name.

        Returns:
            ToolEndpoint: Endpoint description with decrypted static credential.
        """
        tool = self._get(db, tool_id)
        auth = None
        if tool.auth_type != "none":
            payload = self.encryption.decrypt_json(tool.auth_value) if tool.auth_value else {}
            auth = AuthCredential(kind=tool.auth_type, payload=payload)
        return ToolEndpoint(tool_id=tool.id, name=tool.name, endpoint=tool.endpoint, transport=tool.transport, capabilities=list(tool.capabilities or []), auth=auth)

    def register_tool(self, db: Session, tool: ToolCreate) -> ToolRead:
        """Register a tool endpoint.

        Args:
            db: Database session.
            tool: Tool definition.

        Returns:
            ToolRead: The stored tool (without credentials).

        Raises:
            ConflictError: If a tool with the same name exists.
        """
        auth_type = tool.auth.kind if tool.auth else "none"
        auth_value = self.encryption.encrypt_json(tool.auth.payload) if tool.auth and tool.auth.payload else None
        db_tool = DbTool(
            name=tool.name,
            endpoint=tool.endpoint,
            transport=tool.transport,
            description=tool.description,
            capabilities=tool.capabilities,
            auth_type=auth_type,
            auth_value=auth_value,
        )
        db.add(db_tool)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(f"Tool already exists with name: {tool.name}") from e
        db.refresh(db_tool)
        logger.info(f"Registered tool {db_tool.name} ({db_tool.id})")
        return ToolRead.model_validate(db_tool)

    def list_tools(self, db: Session) -> List[ToolRead]:
        """List registered tools.

        Args:
            db: Database session.

        Returns:
            List[ToolRead]: Tools ordered by name.
        """
        return [ToolRead.model_validate(t) for t in db.execute(select(DbTool).order_by(DbTool.name)).scalars().all()]

    def delete_tool(self, db: Session, tool_id: str) -> None:
        """Delete a tool and, by cascade, its interfaces, OAuth configurations and tokens.

        Args:
            db: Database session.
            tool_id: Tool id or name.
        """
        tool = self._get(db, tool_id)
        db.delete(tool)
        db.commit()
        logger.info(f"Deleted tool {tool.name} ({tool.id})")
