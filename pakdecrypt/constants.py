"""Constants describing the encrypted pak layout. Only the key table variant is supported."""
from enum import IntEnum

END_RECORD_SIGNATURE: bytes = b'PK\x05\x06'
CD_HEADER_SIGNATURE: bytes = b'PK\x01\x02'
LOCAL_HEADER_SIGNATURE: bytes = b'PK\x03\x04'

# Fixed part of each record, signature included.
END_RECORD_SIZE: int = 22
CD_HEADER_SIZE: int = 46
LOCAL_HEADER_SIZE: int = 30
DATA_DESCRIPTOR_SIZE: int = 12

# The comment of the end record can't be larger than this, so the record is always
# somewhere inside the last MAX_COMMENT_LENGTH bytes of the file.
MAX_COMMENT_LENGTH: int = 0xFFFF

RSA_KEY_MESSAGE_LENGTH: int = 128
BLOCK_CIPHER_NUM_KEYS: int = 16
BLOCK_CIPHER_KEY_LENGTH: int = 16

EXTENDED_HEADER_SIZE: int = 8
SIGNING_HEADER_SIZE: int = 4 + RSA_KEY_MESSAGE_LENGTH
ENCRYPTION_HEADER_SIZE: int = 4 + RSA_KEY_MESSAGE_LENGTH + BLOCK_CIPHER_NUM_KEYS * RSA_KEY_MESSAGE_LENGTH
TRAILER_SIZE: int = EXTENDED_HEADER_SIZE + SIGNING_HEADER_SIZE + ENCRYPTION_HEADER_SIZE

DATA_DESCRIPTOR_FLAG: int = 3  # Index in the bit_flag string


class EncryptionType(IntEnum):
    NONE = 0
    STREAM_CIPHER = 1
    TEA = 2
    STREAM_CIPHER_KEYTABLE = 3


class SignatureType(IntEnum):
    NOT_SIGNED = 0
    CDR_SIGNED = 1


STORED: int = 0
DEFLATE: int = 8
STORE_AND_STREAMCIPHER_KEYTABLE: int = 13
DEFLATE_AND_STREAMCIPHER_KEYTABLE: int = 14

COMPRESSION_NAMES: dict[int, str] = {
    0: 'Stored',
    1: 'Shrink',
    2: 'Reduce1',
    3: 'Reduce2',
    4: 'Reduce3',
    5: 'Reduce4',
    6: 'Implode',
    7: 'Tokenize',
    8: 'Deflate',
    9: 'Deflate64',
    10: 'PKWARE Imploding',
    11: 'Deflate and Encrypt',
    12: 'Deflate and Streamcipher',
    13: 'Store and Streamcipher Keytable',
    14: 'Deflate and Streamcipher Keytable'
}

# Encrypted variants and the plain method they carry.
DECRYPTED_METHOD: dict[int, int] = {
    STORE_AND_STREAMCIPHER_KEYTABLE: STORED,
    DEFLATE_AND_STREAMCIPHER_KEYTABLE: DEFLATE
}


class ErrorCode(IntEnum):
    """Codes returned at the library boundary. Values are stable."""

    NONE = 0
    UNKNOWN = 1
    FILE_NOT_FOUND = 2
    CDR_NOT_FOUND = 3
    DECRYPTION_FAILED = 4
    READ_KEY_FAILED = 5
    NO_EXTENDED_HEADER = 6
    UNSUPPORTED_ENCRYPTION = 7


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.NONE: 'No error',
    ErrorCode.FILE_NOT_FOUND: 'File not found',
    ErrorCode.CDR_NOT_FOUND: 'CDR not found',
    ErrorCode.DECRYPTION_FAILED: 'Decryption failed',
    ErrorCode.READ_KEY_FAILED: 'Failed to read key file',
    ErrorCode.NO_EXTENDED_HEADER: 'No extended header',
    ErrorCode.UNSUPPORTED_ENCRYPTION: 'Unsupported encryption'
}


def error_to_string(code: int) -> str:
    """Human readable text for an error ``code``. Unrecognized codes are reported as unknown errors."""
    try:
        return ERROR_MESSAGES.get(ErrorCode(code), 'Unknown error')
    except ValueError:
        return 'Unknown error'
