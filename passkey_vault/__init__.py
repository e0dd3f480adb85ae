"""
Passkey Vault - passkey (WebAuthn PRF) based end-to-end encryption

Server side: passkey_vault.app_factory.create_app()
Device side: passkey_vault.crypto (EncryptionContext and friends)
"""

__version__ = "0.1.0"
