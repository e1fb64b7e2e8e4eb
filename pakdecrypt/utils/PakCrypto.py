"""Cryptographic primitives used by encrypted paks.

The archive keeps 16 Twofish keys and the initial vector of the central directory
wrapped with the RSA private key of the publisher, so they're unwrapped with the
public key (``c ** e mod n``) followed by padding validation. Everything else is
Twofish in counter mode with a little endian counter, restarted from the initial
vector for every section.
"""
from dataclasses import dataclass
from functools import lru_cache
from hmac import compare_digest
from logging import getLogger
from typing import BinaryIO, Callable, Protocol

from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature.pss import MGF1
from Crypto.Util.strxor import strxor

from ..constants import BLOCK_CIPHER_KEY_LENGTH
from ..exceptions import CipherUnavailable, DecryptionFailed, ReadKeyFailed, TruncatedArchive

logger = getLogger(__name__)

OAEP: str = 'OAEP'
PKCS1_V1_5: str = 'PKCS1-v1_5'

BLOCK_SIZE: int = 16
CHUNK_SIZE: int = 1024 * 1024
_COUNTER_MASK: int = (1 << (BLOCK_SIZE * 8)) - 1


class BlockCipher(Protocol):
    def encrypt(self, block: bytes) -> bytes: ...


def twofish_cipher(key: bytes) -> BlockCipher:
    # Imported here so that the provider can be built with another cipher without the extension.
    try:
        import twofish
    except ImportError as e:
        raise CipherUnavailable(f'Twofish is not available ({e}). The twofish package supports Python 3.11 and older.') from e
    return twofish.Twofish(bytes(key))


@dataclass(frozen=True)
class KeySet:
    """Plain key material of one archive. Use ``wipe`` once the archive is closed."""

    cipher_keys: tuple[bytearray, ...]
    cdr_initial_vector: bytearray

    def wipe(self) -> None:
        for key in (*self.cipher_keys, self.cdr_initial_vector):
            key[:] = bytes(len(key))


class CounterMode:

    """Keystream generator that turns a block cipher into a stream cipher.

    Block N of the keystream is the encrypted value of ``iv + N``, with the whole
    initial vector read as a little endian integer. Decryption and encryption are the
    same operation, so applying it twice with the same key and IV returns the input.

    Usage:
        ctr = CounterMode(cipher, iv)
        plain = ctr.process(chunk1) + ctr.process(chunk2)
    """

    def __init__(self, cipher: BlockCipher, iv: bytes):
        if len(iv) != BLOCK_SIZE:
            raise ValueError(f'Initial vector must be {BLOCK_SIZE} bytes long, not {len(iv)}.')
        self._cipher = cipher
        self._counter: int = int.from_bytes(iv, 'little')
        self._pad: bytes = b''

    def _next_block(self) -> bytes:
        block = self._cipher.encrypt(self._counter.to_bytes(BLOCK_SIZE, 'little'))
        self._counter = (self._counter + 1) & _COUNTER_MASK
        return block

    def process(self, data: bytes) -> bytes:
        if not data:
            return b''
        missing = len(data) - len(self._pad)
        blocks = [self._next_block() for _ in range(-(-missing // BLOCK_SIZE))] if missing > 0 else []
        stream = self._pad + b''.join(blocks)
        self._pad = stream[len(data):]
        return strxor(bytes(data), stream[:len(data)])


class CryptoProvider:

    """Primitives needed to decrypt a pak.

    ``cipher`` is a factory that takes a 16 byte key and returns an object with an
    ``encrypt`` method for single blocks. Instances hold no per archive state, so one
    provider is shared by every archive opened in the process (see ``default_provider``).
    """

    def __init__(self, cipher: Callable[[bytes], BlockCipher] = twofish_cipher, hash_algo=SHA256):
        self._cipher = cipher
        self._hash = hash_algo

    def import_public_key(self, data: bytes) -> RSA.RsaKey:
        """Import DER or PEM encoded RSA key. Only the public part is used."""
        try:
            key = RSA.import_key(data)
        except (ValueError, IndexError, TypeError) as e:
            raise ReadKeyFailed(f'Invalid public key ({e}).') from e
        return key.public_key()

    def unwrap_key(self, key: RSA.RsaKey, block: bytes, padding: str = OAEP) -> bytes:
        """Recover a message wrapped with the private counterpart of ``key``.

        Raises DecryptionFailed if the block doesn't match the modulus or the padding is invalid.
        """

        if padding not in (OAEP, PKCS1_V1_5):
            raise ValueError(f'Unknown padding {padding!r}.')

        modulus_length: int = key.size_in_bytes()
        if len(block) != modulus_length:
            raise DecryptionFailed(f'Wrapped block is {len(block)} bytes, modulus is {modulus_length}.')

        c = int.from_bytes(block, 'big')
        if c >= key.n:
            raise DecryptionFailed('Wrapped block is out of range.')
        encoded = pow(c, key.e, key.n).to_bytes(modulus_length, 'big')

        if padding == OAEP:
            return self._oaep_decode(encoded)
        return self._pkcs1_v1_5_decode(encoded)

    def _oaep_decode(self, encoded: bytes) -> bytes:
        h_len: int = self._hash.digest_size
        if len(encoded) < 2 * h_len + 2:
            raise DecryptionFailed('Modulus is too small for OAEP.')

        masked_seed = encoded[1:h_len + 1]
        masked_db = encoded[h_len + 1:]
        seed = strxor(masked_seed, MGF1(masked_db, h_len, self._hash))
        db = strxor(masked_db, MGF1(seed, len(masked_db), self._hash))

        # The leading byte and the label hash are both checked before reporting, so
        # a bad block fails the same way whatever part of it is wrong.
        valid = encoded[0] == 0
        valid &= compare_digest(db[:h_len], self._hash.new(b'').digest())
        separator = db.find(b'\x01', h_len)
        if not valid or separator == -1 or db[h_len:separator].strip(b'\x00'):
            raise DecryptionFailed('Invalid OAEP padding.')
        return db[separator + 1:]

    @staticmethod
    def _pkcs1_v1_5_decode(encoded: bytes) -> bytes:
        separator = encoded.find(b'\x00', 2)
        if encoded[:2] != b'\x00\x02' or separator < 10:
            # At least 8 bytes of non zero padding.
            raise DecryptionFailed('Invalid PKCS #1 v1.5 padding.')
        return encoded[separator + 1:]

    def start_stream(self, key: bytes, iv: bytes) -> CounterMode:
        """Start a keystream from position 0."""
        if len(key) != BLOCK_CIPHER_KEY_LENGTH:
            raise DecryptionFailed(f'Cipher key must be {BLOCK_CIPHER_KEY_LENGTH} bytes long.')
        try:
            return CounterMode(self._cipher(bytes(key)), bytes(iv))
        except ValueError as e:
            raise DecryptionFailed(f'Failed to start decoding ({e}).') from e

    def decrypt_data(self, data: bytes, key: bytes, iv: bytes) -> bytes:
        return self.start_stream(key, iv).process(data)

    def decrypt_section(
            self,
            src: BinaryIO,
            dst: BinaryIO,
            size: int,
            key: bytes,
            iv: bytes
    ) -> None:
        """Decrypt ``size`` bytes from ``src`` to ``dst`` with a fresh keystream."""

        stream = self.start_stream(key, iv)
        remaining = size
        while remaining > 0:
            chunk = src.read(min(remaining, CHUNK_SIZE))
            if not chunk:
                raise TruncatedArchive(f'Section ended {remaining} bytes early.')
            dst.write(stream.process(chunk))
            remaining -= len(chunk)

    def start_hash(self):
        return self._hash.new()


@lru_cache(maxsize=None)
def default_provider() -> CryptoProvider:
    """Process wide provider, created on first use."""
    logger.debug('Creating default crypto provider')
    return CryptoProvider()
