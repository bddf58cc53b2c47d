"""
Additively Homomorphic Ciphertexts for the Aggregation Ledger

This module supplies the ciphertext capability the ledger consumes:

1. Validity check - is_initialized(ciphertext)
2. Homomorphic addition - add(a, b)
3. Identity element - encrypted_zero()

The reference scheme is Paillier. Providers encrypt with the public key,
the ledger only ever adds ciphertexts, and only the decryption oracle holds
the private key.
"""

import math
import secrets
import struct
from dataclasses import dataclass, field
from datetime import datetime
from typing import Tuple

from ledger_logging import get_ledger_logger

he_logger = get_ledger_logger("homomorphic_encryption")

PAILLIER_SCHEME = "paillier"

# Trial divisors used before Miller-Rabin
_SMALL_PRIMES = (3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37, 41, 43, 47, 53, 59, 61, 67, 71, 73)


@dataclass(frozen=True)
class HECiphertext:
    """Opaque encrypted value. Equality ignores bookkeeping fields."""
    scheme: str
    value: int
    modulus: int
    operation_count: int = field(default=0, compare=False)

    def to_bytes(self) -> bytes:
        """Canonical length-prefixed encoding used for fingerprints."""
        scheme = self.scheme.encode()
        value = self.value.to_bytes(max(1, (self.value.bit_length() + 7) // 8), 'big')
        modulus = self.modulus.to_bytes(max(1, (self.modulus.bit_length() + 7) // 8), 'big')
        return b"".join(
            struct.pack(">I", len(part)) + part for part in (scheme, value, modulus)
        )


@dataclass
class HEPublicKey:
    """Paillier public key (n, g)."""
    n: int
    g: int
    key_bits: int
    created_at: datetime = field(default_factory=datetime.now)
    scheme: str = PAILLIER_SCHEME

    @property
    def n_squared(self) -> int:
        return self.n * self.n


@dataclass
class HEPrivateKey:
    """Paillier private key (lambda, mu) bound to its public key."""
    lambda_n: int
    mu: int
    public_key: HEPublicKey
    created_at: datetime = field(default_factory=datetime.now)
    scheme: str = PAILLIER_SCHEME


class PaillierHomomorphic:
    """
    Paillier cryptosystem - additively homomorphic.
    Supports addition of encrypted values and multiplication by plaintext constants.
    """

    def __init__(self, key_bits: int = 2048):
        """
        Initialize Paillier homomorphic encryption.

        Args:
            key_bits: Security parameter (modulus length in bits)
        """
        if key_bits < 256 or key_bits % 2:
            raise ValueError("key_bits must be an even number >= 256")
        self.key_bits = key_bits
        self.public_key = None
        self.private_key = None

        he_logger.info(f"Paillier encryption initialized with {key_bits}-bit keys")

    @staticmethod
    def _is_probable_prime(n: int, rounds: int = 20) -> bool:
        """Miller-Rabin primality test."""
        if n < 2:
            return False
        if n in (2, 3):
            return True
        if n % 2 == 0:
            return False
        for p in _SMALL_PRIMES:
            if n == p:
                return True
            if n % p == 0:
                return False

        # Write n-1 as d * 2^r
        r = 0
        d = n - 1
        while d % 2 == 0:
            r += 1
            d //= 2

        for _ in range(rounds):
            a = secrets.randbelow(n - 3) + 2
            x = pow(a, d, n)
            if x == 1 or x == n - 1:
                continue
            for _ in range(r - 1):
                x = pow(x, 2, n)
                if x == n - 1:
                    break
            else:
                return False
        return True

    def _generate_prime(self, bits: int) -> int:
        """Generate a random prime of exactly bits length."""
        while True:
            candidate = secrets.randbits(bits)
            candidate |= (1 << (bits - 1)) | (1 << (bits - 2))  # keep p*q at full length
            candidate |= 1
            if self._is_probable_prime(candidate):
                return candidate

    def generate_keypair(self) -> Tuple[HEPublicKey, HEPrivateKey]:
        """
        Generate Paillier public/private key pair.

        Returns:
            Tuple of (public_key, private_key)
        """
        half = self.key_bits // 2
        p = self._generate_prime(half)
        q = self._generate_prime(half)
        while p == q or math.gcd(p * q, (p - 1) * (q - 1)) != 1:
            q = self._generate_prime(half)

        n = p * q
        n_squared = n * n
        lambda_n = ((p - 1) * (q - 1)) // math.gcd(p - 1, q - 1)

        # g = n + 1 gives L(g^lambda mod n^2) = lambda mod n
        g = n + 1
        l_value = (pow(g, lambda_n, n_squared) - 1) // n
        mu = pow(l_value, -1, n)

        public_key = HEPublicKey(n=n, g=g, key_bits=self.key_bits)
        private_key = HEPrivateKey(lambda_n=lambda_n, mu=mu, public_key=public_key)

        self.public_key = public_key
        self.private_key = private_key

        he_logger.info(f"Generated {self.key_bits}-bit Paillier keypair")
        return public_key, private_key

    @staticmethod
    def encrypt(plaintext: int, public_key: HEPublicKey) -> HECiphertext:
        """
        Encrypt a non-negative integer under public_key.

        Args:
            plaintext: Integer to encrypt, 0 <= plaintext < n
            public_key: Public key for encryption

        Returns:
            HECiphertext object
        """
        n = public_key.n
        n_squared = public_key.n_squared
        if not 0 <= plaintext < n:
            raise ValueError("Plaintext must be in [0, n)")

        r = secrets.randbelow(n - 1) + 1
        while math.gcd(r, n) != 1:
            r = secrets.randbelow(n - 1) + 1

        # c = g^m * r^n mod n^2
        c = (pow(public_key.g, plaintext, n_squared) * pow(r, n, n_squared)) % n_squared
        return HECiphertext(scheme=PAILLIER_SCHEME, value=c, modulus=n)

    @staticmethod
    def decrypt(ciphertext: HECiphertext, private_key: HEPrivateKey) -> int:
        """
        Decrypt a Paillier ciphertext.

        Args:
            ciphertext: Ciphertext to decrypt
            private_key: Private key for decryption

        Returns:
            Decrypted plaintext integer
        """
        n = private_key.public_key.n
        if ciphertext.scheme != PAILLIER_SCHEME or ciphertext.modulus != n:
            raise ValueError("Ciphertext was not produced under this key")

        # m = L(c^lambda mod n^2) * mu mod n, where L(x) = (x - 1) / n
        c_lambda = pow(ciphertext.value, private_key.lambda_n, n * n)
        return (((c_lambda - 1) // n) * private_key.mu) % n

    @staticmethod
    def add_encrypted(ct1: HECiphertext, ct2: HECiphertext) -> HECiphertext:
        """
        Homomorphically add two encrypted values.

        Returns:
            Ciphertext encrypting the sum
        """
        if ct1.scheme != PAILLIER_SCHEME or ct2.scheme != PAILLIER_SCHEME:
            raise ValueError("Ciphertext scheme mismatch")
        if ct1.modulus != ct2.modulus:
            raise ValueError("Ciphertexts were produced under different keys")

        n_squared = ct1.modulus * ct1.modulus
        return HECiphertext(
            scheme=PAILLIER_SCHEME,
            value=(ct1.value * ct2.value) % n_squared,
            modulus=ct1.modulus,
            operation_count=max(ct1.operation_count, ct2.operation_count) + 1
        )

    @staticmethod
    def multiply_by_constant(ciphertext: HECiphertext, constant: int) -> HECiphertext:
        """Homomorphically multiply an encrypted value by a plaintext constant."""
        if constant < 0:
            raise ValueError("Constant must be non-negative")
        n_squared = ciphertext.modulus * ciphertext.modulus
        return HECiphertext(
            scheme=ciphertext.scheme,
            value=pow(ciphertext.value, constant, n_squared),
            modulus=ciphertext.modulus,
            operation_count=ciphertext.operation_count + 1
        )


class CiphertextBackend:
    """Ciphertext capability consumed by the ledger and the aggregation engine."""

    def is_initialized(self, ciphertext) -> bool:
        raise NotImplementedError

    def add(self, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        raise NotImplementedError

    def encrypted_zero(self) -> HECiphertext:
        raise NotImplementedError


class PaillierCiphertextBackend(CiphertextBackend):
    """Paillier ciphertext capability bound to one public key."""

    def __init__(self, public_key: HEPublicKey):
        self.public_key = public_key

    def is_initialized(self, ciphertext) -> bool:
        """True if ciphertext is a well-formed Paillier ciphertext under our key."""
        if not isinstance(ciphertext, HECiphertext):
            return False
        if ciphertext.scheme != PAILLIER_SCHEME or ciphertext.modulus != self.public_key.n:
            return False
        if isinstance(ciphertext.value, bool) or not isinstance(ciphertext.value, int):
            return False
        if not 0 < ciphertext.value < self.public_key.n_squared:
            return False
        # Elements sharing a factor with n are outside Z*_{n^2}
        return math.gcd(ciphertext.value, self.public_key.n) == 1

    def add(self, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        return PaillierHomomorphic.add_encrypted(a, b)

    def encrypted_zero(self) -> HECiphertext:
        """Trivial encryption of zero (r = 1), the identity for add."""
        return HECiphertext(scheme=PAILLIER_SCHEME, value=1, modulus=self.public_key.n)

    def encrypt(self, plaintext: int) -> HECiphertext:
        """Encrypt a plaintext under the bound public key (provider side)."""
        return PaillierHomomorphic.encrypt(plaintext, self.public_key)
