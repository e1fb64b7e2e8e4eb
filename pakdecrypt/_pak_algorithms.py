from io import BytesIO
from logging import getLogger
from os import SEEK_END
from typing import BinaryIO

from Crypto.PublicKey import RSA

from .constants import *
from .exceptions import *
from ._pakfile import CDEnd, CDHeader, DataDescriptor, EncryptionHeader, ExtendedHeader, LocalHeader, SigningHeader, _read
from .utils.PakCrypto import OAEP, CryptoProvider, KeySet

logger = getLogger(__name__)


def find_end_record(file: BinaryIO) -> int:
    """Return offset of the End of Central Directory record.

    The record is followed by a comment of at most 64KB, so it's searched backwards
    through the end of the file. Comment may contain the signature too, a candidate is
    only accepted if its comment length reaches exactly to the end of the file.
    """

    file.seek(0, SEEK_END)
    file_size: int = file.tell()
    if file_size < END_RECORD_SIZE:
        raise CdrNotFound(f'File is too small ({file_size} bytes) to be an archive.')

    window: int = min(file_size, MAX_COMMENT_LENGTH)
    file.seek(file_size - window)
    buffer: bytes = file.read(window)

    position = buffer.rfind(END_RECORD_SIGNATURE, 0, window - END_RECORD_SIZE + len(END_RECORD_SIGNATURE))
    while position != -1:
        comment_length = int.from_bytes(buffer[position + 20:position + END_RECORD_SIZE], 'little')
        if comment_length == window - (position + END_RECORD_SIZE):
            return file_size - window + position
        position = buffer.rfind(END_RECORD_SIGNATURE, 0, position + len(END_RECORD_SIGNATURE) - 1)

    raise CdrNotFound('CDR end record not found.')

def read_end_record(file: BinaryIO) -> CDEnd:
    """Locate and decode the end record. Stream is left at the start of the trailer."""
    offset = find_end_record(file)
    logger.debug('End of central directory at offset %d', offset)
    file.seek(offset)
    return CDEnd.__init_raw__(file)

def read_keys(file: BinaryIO, endof_cd: CDEnd, public_key: RSA.RsaKey, provider: CryptoProvider) -> KeySet:
    """Decode the trailer that follows the end record and unwrap the key table.

    ``file`` must be positioned right after the end record.
    """

    if endof_cd.comment_length < EXTENDED_HEADER_SIZE:
        raise NoExtendedHeader(f'Trailer is {endof_cd.comment_length} bytes, extended header needs {EXTENDED_HEADER_SIZE}.')

    try:
        extended_header = ExtendedHeader.__init_raw__(file)
        if extended_header.header_size != EXTENDED_HEADER_SIZE:
            raise NoExtendedHeader(f'Extended header declares {extended_header.header_size} bytes.')
        if extended_header.encryption_type != EncryptionType.STREAM_CIPHER_KEYTABLE:
            raise UnsupportedEncryption(f'Encryption type {extended_header.encryption_type} is not supported.')

        SigningHeader.__init_raw__(file)  # Signature is not verified

        encryption_header = EncryptionHeader.__init_raw__(file)
    except TruncatedArchive as e:
        raise DecryptionFailed(f'Trailer is truncated ({e})') from e

    if encryption_header.header_size != ENCRYPTION_HEADER_SIZE:
        raise DecryptionFailed('Encryption header corrupted.')

    cdr_initial_vector = _unwrap(provider, public_key, encryption_header.init_vector)
    cipher_keys = tuple(_unwrap(provider, public_key, block) for block in encryption_header.keys)
    logger.debug('Unwrapped %d cipher keys', len(cipher_keys))
    return KeySet(cipher_keys, cdr_initial_vector)

def _unwrap(provider: CryptoProvider, public_key: RSA.RsaKey, block: bytes) -> bytearray:
    message = provider.unwrap_key(public_key, block, OAEP)
    if len(message) < BLOCK_CIPHER_KEY_LENGTH:
        raise DecryptionFailed(f'Unwrapped key is only {len(message)} bytes long.')
    return bytearray(message[:BLOCK_CIPHER_KEY_LENGTH])

def decrypt_directory(file: BinaryIO, endof_cd: CDEnd, keys: KeySet, provider: CryptoProvider) -> tuple[bytes, bytes]:
    """Read the central directory. Returns its encrypted and decrypted bytes."""

    file.seek(endof_cd.offset)
    try:
        raw: bytes = _read(file, endof_cd.sizeof_CD)
    except TruncatedArchive as e:
        raise BadDirectory(f'Central directory at offset {endof_cd.offset} is truncated.') from e
    return raw, provider.decrypt_data(raw, keys.cipher_keys[0], keys.cdr_initial_vector)

def convert_method(method: int) -> int:
    """Replace stream cipher variants of compression methods with the plain ones."""
    return DECRYPTED_METHOD.get(method, method)

def read_cd_headers(buffer: bytes, endof_cd: CDEnd, encoding: str) -> list[CDHeader]:
    """Parse decrypted central directory.

    Entries have dynamic size so they have to be read one after another.
    """

    cursor = BytesIO(buffer)
    headers: list[CDHeader] = []

    try:
        for i in range(endof_cd.total_CD_entries):
            header = CDHeader.__init_raw__(cursor, encoding)
            if header.signature != CD_HEADER_SIGNATURE:
                raise BadDirectory(f'Entry {i} has invalid signature {header.signature!r}.')
            header.compression_method = convert_method(header.compression_method)
            headers.append(header)
    except TruncatedArchive as e:
        raise BadDirectory(f'Central directory entry {len(headers)} is truncated.') from e

    if cursor.tell() != endof_cd.sizeof_CD:
        raise BadDirectory(f'Read {cursor.tell()} bytes of central directory, expected {endof_cd.sizeof_CD}.')

    return headers

def get_encryption_key_index(crc: int) -> int:
    """Index of the key in the key table used for a file with given ``crc``."""
    return (~(crc >> 2)) & 0x0F

def get_initial_vector(descriptor: DataDescriptor) -> bytes:
    """Initial vector used for every section of a file."""

    crc = descriptor.crc
    compressed = descriptor.compressed_size
    uncompressed = descriptor.uncompressed_size

    words = (
        uncompressed ^ (compressed << 12),
        int(compressed == 0),
        crc ^ (compressed << 12),
        int(uncompressed == 0) ^ compressed
    )
    return b''.join((word & 0xFFFFFFFF).to_bytes(4, 'little') for word in words)

def decrypt_entry(src: BinaryIO, dst: BinaryIO, header: CDHeader, keys: KeySet, provider: CryptoProvider) -> int:
    """Decrypt local header, data and data descriptor of one file to ``dst``.

    Each of them is encrypted separately, starting from the same initial vector.
    Returns number of bytes written.
    """

    iv = get_initial_vector(header.descriptor)
    key_index = get_encryption_key_index(header.crc)
    key = keys.cipher_keys[key_index]
    logger.debug('Decrypting %r at offset %d with key %d', header.filename, header.local_header_relative_offset, key_index)

    # Sizes in the central directory can't be trusted for the header,
    # so lengths of the name and extra field come from the local header.
    src.seek(header.local_header_relative_offset)
    fixed_part = provider.decrypt_data(_read(src, LOCAL_HEADER_SIZE), key, iv)
    local_header = LocalHeader.from_bytes(fixed_part)
    if local_header.signature != LOCAL_HEADER_SIGNATURE:
        raise DecryptionFailed(f'Local header of {header.filename!r} has invalid signature.')

    src.seek(header.local_header_relative_offset)
    section = provider.decrypt_data(_read(src, local_header.total_length), key, iv)
    local_header.compression_method = convert_method(local_header.compression_method)
    dst.write(local_header.encode())
    dst.write(section[LOCAL_HEADER_SIZE:])
    written: int = len(section)

    if header.compressed_size > 0:
        provider.decrypt_section(src, dst, header.compressed_size, key, iv)
        written += header.compressed_size

    if local_header.has_data_descriptor:
        descriptor_size: int = DATA_DESCRIPTOR_SIZE
        position = src.tell()
        possible_signature = provider.decrypt_data(_read(src, 4), key, iv)
        if possible_signature != END_RECORD_SIGNATURE:
            descriptor_size += 4
        src.seek(position)
        provider.decrypt_section(src, dst, descriptor_size, key, iv)
        written += descriptor_size

    return written
