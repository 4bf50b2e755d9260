"""Encryption utilities for secrets stored in the configuration file."""

import base64
import os
from typing import Optional
from cryptography.fernet import Fernet

ENCRYPTED_PREFIX = "enc:"


class EncryptionService:
    """Handles AES encryption and decryption of configuration secrets."""
    
    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.
        
        Args:
            encryption_key: Base64-encoded Fernet key. If not provided, the
                          CONFIG_ENCRYPTION_KEY env var is used, and a fresh key
                          is generated when neither is set (development only)
        """
        if encryption_key:
            self.key = encryption_key.encode()
        else:
            env_key = os.getenv('CONFIG_ENCRYPTION_KEY')
            if env_key:
                self.key = env_key.encode()
            else:
                self.key = Fernet.generate_key()
        
        self.cipher = Fernet(self.key)
    
    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string, returning a base64-encoded token."""
        if not plaintext:
            return ""
        
        encrypted_bytes = self.cipher.encrypt(plaintext.encode())
        return base64.b64encode(encrypted_bytes).decode()
    
    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a token produced by encrypt()."""
        if not ciphertext:
            return ""
        
        encrypted_bytes = base64.b64decode(ciphertext.encode())
        decrypted_bytes = self.cipher.decrypt(encrypted_bytes)
        return decrypted_bytes.decode()
    
    def seal(self, secret: str) -> str:
        """Encrypt a secret into the prefixed form stored in config.json."""
        if not secret:
            return ""
        return ENCRYPTED_PREFIX + self.encrypt(secret)
    
    def reveal(self, value: str) -> str:
        """
        Return the plaintext of a config value.
        
        Values carrying the ``enc:`` prefix are decrypted; anything else is
        returned unchanged so plaintext configs keep working.
        """
        if value and value.startswith(ENCRYPTED_PREFIX):
            return self.decrypt(value[len(ENCRYPTED_PREFIX):])
        return value
    
    @staticmethod
    def generate_key() -> str:
        """Generate a new base64-encoded encryption key."""
        return Fernet.generate_key().decode()
