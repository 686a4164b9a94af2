from __future__ import annotations

from sqlalchemy import select

from . import config
from .auth_models import Role, User
from .auth_service import _create_user
from .billing_service import seed_settings
from .db import db_session
from .inventory_models import InventoryCategory
from .logger import get_logger

logger = get_logger(__name__)

DEFAULT_CATEGORIES = [
    ("Tablets", "Oral solid dosage forms"),
    ("Syrups", "Oral liquids"),
    ("Injections", "Parenteral medication"),
    ("Ointments", "Topical medication"),
    ("Surgical Supplies", "Dressings, syringes, gloves"),
    ("Equipment", "Reusable clinic equipment"),
]


def seed_base() -> None:
    """
    Minimal data (idempotent):
    - billing settings with their defaults
    - inventory categories
    - admin account, when ADMIN_EMAIL and ADMIN_PASSWORD are configured
    """
    with db_session() as s:
        seed_settings(s)

        for name, description in DEFAULT_CATEGORIES:
            if s.execute(select(InventoryCategory).where(InventoryCategory.name == name)).scalar_one_or_none() is None:
                s.add(InventoryCategory(name=name, description=description))

        if config.ADMIN_EMAIL and config.ADMIN_PASSWORD:
            email = config.ADMIN_EMAIL.strip().lower()
            if s.execute(select(User).where(User.email == email)).scalar_one_or_none() is None:
                _create_user(s, email, "Administrator", Role.ADMIN, password=config.ADMIN_PASSWORD)
                logger.info("Seed admin created: %s", email)
