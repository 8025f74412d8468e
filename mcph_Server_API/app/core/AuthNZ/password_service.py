# password_service.py
# Description: Argon2 hashing for crate share passwords
#
# Imports
from typing import Optional
#
# 3rd-party imports
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from loguru import logger
#
#######################################################################################################################
#
# Password Service Class


class PasswordService:
    """Hash and verify crate passwords with Argon2id"""

    def __init__(self, time_cost: int = 2, memory_cost: int = 19456, parallelism: int = 1):
        self.hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=32,
            salt_len=16,
        )

    def hash_password(self, password: str) -> str:
        return self.hasher.hash(password)

    def verify_password(self, password: str, password_hash: Optional[str]) -> bool:
        """
        Verify a password against its hash.

        Returns False for a mismatch or for a malformed stored hash; never raises
        for bad input.
        """
        if not password_hash:
            return False
        try:
            return self.hasher.verify(password_hash, password)
        except VerifyMismatchError:
            logger.debug("Crate password verification failed - mismatch")
            return False
        except (VerificationError, InvalidHashError) as e:
            logger.error(f"Crate password verification error - invalid hash: {e}")
            return False

#
# Module Functions

_password_service: Optional[PasswordService] = None


def get_password_service() -> PasswordService:
    global _password_service
    if _password_service is None:
        _password_service = PasswordService()
    return _password_service

#
# End of password_service.py
#######################################################################################################################
