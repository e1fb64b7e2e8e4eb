from dataclasses import dataclass
from io import BytesIO
from typing import BinaryIO

from .constants import *
from .exceptions import *


def _read(file: BinaryIO, size: int) -> bytes:
    """Read exactly ``size`` bytes. Raises TruncatedArchive if the stream ends earlier."""

    data: bytes = file.read(size)
    if len(data) != size:
        raise TruncatedArchive(f'Expected {size} bytes, got {len(data)}.')
    return data

def _read_int(file: BinaryIO, size: int) -> int:
    return int.from_bytes(_read(file, size), 'little')

def _decode_flag(data: bytes) -> str:
    # Bit string where index N is bit N of the flag.
    return "".join("".join(format(bit, '0>8b')[::-1]) for bit in data)

def _encode_flag(bit_flag: str) -> bytes:
    return int(bit_flag[::-1], 2).to_bytes(2, 'little')


@dataclass
class DataDescriptor:
    """CRC and sizes of a file. Per file keys are derived from these three values."""

    crc: int
    compressed_size: int
    uncompressed_size: int

    @classmethod
    def __init_raw__(cls, file: BinaryIO):
        crc = _read_int(file, 4)
        compressed_size = _read_int(file, 4)
        uncompressed_size = _read_int(file, 4)
        return cls(crc, compressed_size, uncompressed_size)

    def encode(self) -> bytes:
        byte_str: bytes = b''
        byte_str += self.crc.to_bytes(4, 'little')
        byte_str += self.compressed_size.to_bytes(4, 'little')
        byte_str += self.uncompressed_size.to_bytes(4, 'little')
        return byte_str


@dataclass
class LocalHeader:
    """Fixed part of the local file header. Name and extra field are not decoded,
    they are copied to the output together with the header.
    """

    signature: bytes
    version_needed_to_extract: int
    bit_flag: str
    compression_method: int
    last_mod_time: bytes
    last_mod_date: bytes
    crc: int
    compressed_size: int
    uncompressed_size: int
    filename_length: int
    extra_field_length: int

    @classmethod
    def __init_raw__(cls, file: BinaryIO):
        signature = _read(file, 4)
        version_needed_to_extract = _read_int(file, 2)
        bit_flag = _decode_flag(_read(file, 2))
        compression_method = _read_int(file, 2)
        last_mod_time = _read(file, 2)
        last_mod_date = _read(file, 2)
        crc = _read_int(file, 4)
        compressed_size = _read_int(file, 4)
        uncompressed_size = _read_int(file, 4)
        filename_length = _read_int(file, 2)
        extra_field_length = _read_int(file, 2)

        return cls(
            signature,
            version_needed_to_extract,
            bit_flag,
            compression_method,
            last_mod_time,
            last_mod_date,
            crc,
            compressed_size,
            uncompressed_size,
            filename_length,
            extra_field_length
        )

    @classmethod
    def from_bytes(cls, data: bytes):
        return cls.__init_raw__(BytesIO(data))

    @property
    def has_data_descriptor(self) -> bool:
        return self.bit_flag[DATA_DESCRIPTOR_FLAG] == '1'

    @property
    def total_length(self) -> int:
        """Length of the header including file name and extra field."""
        return LOCAL_HEADER_SIZE + self.filename_length + self.extra_field_length

    def encode(self) -> bytes:
        byte_str: bytes = b''
        byte_str += self.signature
        byte_str += self.version_needed_to_extract.to_bytes(2, 'little')
        byte_str += _encode_flag(self.bit_flag)
        byte_str += self.compression_method.to_bytes(2, 'little')
        byte_str += self.last_mod_time
        byte_str += self.last_mod_date
        byte_str += self.crc.to_bytes(4, 'little')
        byte_str += self.compressed_size.to_bytes(4, 'little')
        byte_str += self.uncompressed_size.to_bytes(4, 'little')
        byte_str += self.filename_length.to_bytes(2, 'little')
        byte_str += self.extra_field_length.to_bytes(2, 'little')
        return byte_str


@dataclass
class CDHeader:
    """Contents of Central Directory Header.
    See https://pkware.cachefly.net/webdocs/casestudies/APPNOTE.TXT for full documentation.

    File name and comment are decoded with ``surrogateescape`` so that ``encode`` gives back
    the original bytes whatever the encoding.
    """

    signature: bytes
    version_made_by: int
    platform: int
    version_needed_to_extract: int
    bit_flag: str
    compression_method: int
    last_mod_time: bytes
    last_mod_date: bytes
    crc: int
    compressed_size: int
    uncompressed_size: int
    filename_length: int
    extra_field_length: int
    comment_length: int
    disk_number_start: int
    internal_file_attrs: bytes
    external_file_attrs: bytes
    local_header_relative_offset: int
    filename: str
    extra_field: bytes
    comment: str
    encoding: str = 'utf-8'

    @classmethod
    def __init_raw__(cls, file: BinaryIO, encoding: str):
        signature = _read(file, 4)
        version_made_by = _read_int(file, 1)
        platform = _read_int(file, 1)
        version_needed_to_extract = _read_int(file, 2)
        bit_flag = _decode_flag(_read(file, 2))
        compression_method = _read_int(file, 2)
        last_mod_time = _read(file, 2)
        last_mod_date = _read(file, 2)
        crc = _read_int(file, 4)
        compressed_size = _read_int(file, 4)
        uncompressed_size = _read_int(file, 4)
        filename_length = _read_int(file, 2)
        extra_field_length = _read_int(file, 2)
        comment_length = _read_int(file, 2)
        disk_number_start = _read_int(file, 2)
        internal_file_attrs = _read(file, 2)
        external_file_attrs = _read(file, 4)
        local_header_relative_offset = _read_int(file, 4)
        filename = _read(file, filename_length).decode(encoding, 'surrogateescape')
        extra_field = _read(file, extra_field_length)
        comment = _read(file, comment_length).decode(encoding, 'surrogateescape')

        return cls(
            signature,
            version_made_by,
            platform,
            version_needed_to_extract,
            bit_flag,
            compression_method,
            last_mod_time,
            last_mod_date,
            crc,
            compressed_size,
            uncompressed_size,
            filename_length,
            extra_field_length,
            comment_length,
            disk_number_start,
            internal_file_attrs,
            external_file_attrs,
            local_header_relative_offset,
            filename,
            extra_field,
            comment,
            encoding
        )

    @property
    def descriptor(self) -> DataDescriptor:
        return DataDescriptor(self.crc, self.compressed_size, self.uncompressed_size)

    @property
    def compression_name(self) -> str:
        return COMPRESSION_NAMES.get(self.compression_method, f'Unknown ({self.compression_method})')

    def encode(self) -> bytes:
        byte_str: bytes = b''
        byte_str += self.signature
        byte_str += self.version_made_by.to_bytes(1, 'little')
        byte_str += self.platform.to_bytes(1, 'little')
        byte_str += self.version_needed_to_extract.to_bytes(2, 'little')
        byte_str += _encode_flag(self.bit_flag)
        byte_str += self.compression_method.to_bytes(2, 'little')
        byte_str += self.last_mod_time
        byte_str += self.last_mod_date
        byte_str += self.crc.to_bytes(4, 'little')
        byte_str += self.compressed_size.to_bytes(4, 'little')
        byte_str += self.uncompressed_size.to_bytes(4, 'little')
        byte_str += self.filename_length.to_bytes(2, 'little')
        byte_str += self.extra_field_length.to_bytes(2, 'little')
        byte_str += self.comment_length.to_bytes(2, 'little')
        byte_str += self.disk_number_start.to_bytes(2, 'little')
        byte_str += self.internal_file_attrs
        byte_str += self.external_file_attrs
        byte_str += self.local_header_relative_offset.to_bytes(4, 'little')
        byte_str += self.filename.encode(self.encoding, 'surrogateescape')
        byte_str += self.extra_field
        byte_str += self.comment.encode(self.encoding, 'surrogateescape')
        return byte_str


@dataclass
class CDEnd:
    """Contents of End of Central Directory. The comment is not decoded here,
    in encrypted archives it holds the headers with the wrapped keys.
    """

    signature: bytes
    disk_num: int
    disk_num_CD: int
    total_entries: int
    total_CD_entries: int
    sizeof_CD: int
    offset: int
    comment_length: int

    @classmethod
    def __init_raw__(cls, file: BinaryIO):
        signature = _read(file, 4)
        disk_num = _read_int(file, 2)
        disk_num_CD = _read_int(file, 2)
        total_entries = _read_int(file, 2)
        total_CD_entries = _read_int(file, 2)
        sizeof_CD = _read_int(file, 4)
        offset = _read_int(file, 4)
        comment_length = _read_int(file, 2)

        return cls(
            signature,
            disk_num,
            disk_num_CD,
            total_entries,
            total_CD_entries,
            sizeof_CD,
            offset,
            comment_length
        )

    def encode(self) -> bytes:
        byte_str: bytes = b''
        byte_str += self.signature
        byte_str += self.disk_num.to_bytes(2, 'little')
        byte_str += self.disk_num_CD.to_bytes(2, 'little')
        byte_str += self.total_entries.to_bytes(2, 'little')
        byte_str += self.total_CD_entries.to_bytes(2, 'little')
        byte_str += self.sizeof_CD.to_bytes(4, 'little')
        byte_str += self.offset.to_bytes(4, 'little')
        byte_str += self.comment_length.to_bytes(2, 'little')
        return byte_str


@dataclass
class ExtendedHeader:
    """First header of the trailer, tells how the archive is encrypted and signed."""

    header_size: int
    encryption_type: int
    signature_type: int

    @classmethod
    def __init_raw__(cls, file: BinaryIO):
        header_size = _read_int(file, 4)
        encryption_type = _read_int(file, 2)
        signature_type = _read_int(file, 2)
        return cls(header_size, encryption_type, signature_type)

    def encode(self) -> bytes:
        byte_str: bytes = b''
        byte_str += self.header_size.to_bytes(4, 'little')
        byte_str += self.encryption_type.to_bytes(2, 'little')
        byte_str += self.signature_type.to_bytes(2, 'little')
        return byte_str


@dataclass
class SigningHeader:
    header_size: int
    signature: bytes

    @classmethod
    def __init_raw__(cls, file: BinaryIO):
        header_size = _read_int(file, 4)
        signature = _read(file, RSA_KEY_MESSAGE_LENGTH)
        return cls(header_size, signature)

    def encode(self) -> bytes:
        return self.header_size.to_bytes(4, 'little') + self.signature


@dataclass
class EncryptionHeader:
    """Wrapped initial vector of the central directory and wrapped key table.
    Every block is as long as the RSA modulus.
    """

    header_size: int
    init_vector: bytes
    keys: list[bytes]

    @classmethod
    def __init_raw__(cls, file: BinaryIO):
        header_size = _read_int(file, 4)
        init_vector = _read(file, RSA_KEY_MESSAGE_LENGTH)
        keys = [_read(file, RSA_KEY_MESSAGE_LENGTH) for _ in range(BLOCK_CIPHER_NUM_KEYS)]
        return cls(header_size, init_vector, keys)

    def encode(self) -> bytes:
        byte_str: bytes = b''
        byte_str += self.header_size.to_bytes(4, 'little')
        byte_str += self.init_vector
        for key in self.keys:
            byte_str += key
        return byte_str
