#!/usr/bin/env python3
"""
Generate a secure SECRET_KEY for Match Picks
"""

import secrets


def generate_secrets():
    """Generate secure random keys for the application"""
    print("🔐 Generating secure secrets for Match Picks...")
    print("=" * 50)
    print(f"SECRET_KEY={secrets.token_urlsafe(32)}")
    print("=" * 50)
    print("📝 Copy this value to your .env file")


if __name__ == "__main__":
    generate_secrets()
