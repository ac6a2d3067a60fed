from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Tenant:
    """A community; the unit of data isolation."""

    id: str
    key: str
    name: str
    contact_email: str = ""
    description: str = ""
    settings: Dict = field(default_factory=dict)
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class User:
    id: str
    email: str
    name: str
    role: str = "tenant_member"
    tenant_id: Optional[str] = None
    is_active: bool = True
    apartment_number: str = ""
    phone: str = ""
    avatar: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Notification:
    id: str
    user_id: str
    tenant_id: Optional[str]
    type: str
    message: str
    link: str
    created_by: Optional[str] = None
    is_read: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Issue:
    id: str
    tenant_id: str
    created_by: str
    title: str
    description: str
    category: str = "other"
    status: str = "open"
    assigned_to: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Comment:
    id: str
    issue_id: str
    tenant_id: str
    author_id: str
    content: str
    is_status_update: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
