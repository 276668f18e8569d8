"""
Configuration lue depuis l'environnement.

Chaque valeur est relue à l'appel, ce qui permet aux tests de
la surcharger avec monkeypatch.setenv.
"""

import os


def get_store_uri() -> str:
    return os.environ.get("BOUTIQUE_STORE_URI", "sqlite:///boutique.db")


def get_admin_token():
    return os.environ.get("BOUTIQUE_ADMIN_TOKEN") or None


def get_discord_token():
    return os.environ.get("DISCORD_TOKEN") or None


def get_discord_api_url() -> str:
    return os.environ.get("DISCORD_API_URL", "https://discord.com/api/v10").rstrip("/")


def get_discord_timeout() -> float:
    return float(os.environ.get("DISCORD_TIMEOUT", "10"))
