#!/usr/bin/env python3
"""
Генерирует ключ для ENCRYPTION_KEY (64 hex символа, AES-256)
и проверяет его шифрованием пробного события.
"""
import sys

from ga4_relay.core.crypto import create_permanent_token, decrypt_permanent_token, generate_key


def main() -> int:
    key = generate_key()
    probe = '{"name": "page_view"}'
    if decrypt_permanent_token(create_permanent_token(probe, key), key) != probe:
        print("❌ Generated key failed the self-check")
        return 1
    print(f"ENCRYPTION_KEY={key}")
    print("✅ Add the line above to .env together with ENCRYPTION_ENABLED=true")
    return 0


if __name__ == "__main__":
    sys.exit(main())
