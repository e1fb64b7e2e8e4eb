from dataclasses import dataclass, replace
from io import BytesIO
from logging import getLogger
from os import PathLike
from types import TracebackType
from typing import BinaryIO, Callable, Generic, Iterable, Optional, Self, TypeVar

from ._pakfile import CDEnd, CDHeader
from ._pak_algorithms import decrypt_directory, decrypt_entry, read_cd_headers, read_end_record, read_keys
from .constants import ErrorCode, error_to_string
from .exceptions import *
from .utils.PakCrypto import CryptoProvider, KeySet, default_provider

logger = getLogger(__name__)

T = TypeVar('T')


class PakFile:
    """Encrypted pak with unwrapped keys and decrypted central directory.
    Use ``PakFile.open`` to initialise it, preferably as a context manager.

    Attributes:
        encoding: encoding of file names and comments.
    """

    def __init__(
            self,
            f: BinaryIO,
            endof_cd: CDEnd,
            cd_headers: list[CDHeader],
            raw_directory: bytes,
            keys: KeySet,
            provider: CryptoProvider,
            encoding: str,
            indirect: bool
    ):
        self._file: BinaryIO = f
        self._endof_CD: CDEnd = endof_cd
        self._cd_headers: list[CDHeader] = cd_headers
        self._raw_directory: bytes = raw_directory
        self._keys: KeySet = keys
        self._provider: CryptoProvider = provider
        self._indirect: bool = indirect
        self._closed: bool = False
        self.encoding: str = encoding

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        self.close()

    @staticmethod
    def open(
            f: int | str | bytes | PathLike[str] | PathLike[bytes] | BinaryIO,
            public_key: bytes,
            provider: Optional[CryptoProvider] = None,
            encoding: str = 'utf-8'
    ) -> 'PakFile':
        """Open encrypted pak, unwrap its keys with ``public_key`` and read the central directory.

        ``f`` must be a filename, pathlike string or a seekable binary stream.
        ``public_key`` is a DER (or PEM) encoded RSA public key.

        Raises FileNotFound, ReadKeyFailed, CdrNotFound, NoExtendedHeader,
        UnsupportedEncryption or DecryptionFailed.
        """

        if provider is None:
            provider = default_provider()
        indirect: bool = False

        if isinstance(f, (int, str, bytes, PathLike)):
            try:
                f = open(f, 'rb')
            except OSError as e:
                raise FileNotFound(f"Archive {f!r} can't be opened ({e.strerror}).") from e
            indirect = True
        elif not hasattr(f, 'read'):
            raise TypeError(f'Expected int, str, bytes, os.PathLike object or binary stream, not {type(f).__name__}.')

        keys: Optional[KeySet] = None
        try:
            rsa_key = provider.import_public_key(public_key)
            endof_cd = read_end_record(f)
            keys = read_keys(f, endof_cd, rsa_key, provider)
            raw_directory, directory = decrypt_directory(f, endof_cd, keys, provider)
            cd_headers = read_cd_headers(directory, endof_cd, encoding)
        except BaseException:
            if keys is not None:
                keys.wipe()
            if indirect:
                f.close()
            raise

        logger.info('Opened pak with %d entries', len(cd_headers))
        return PakFile(f, endof_cd, cd_headers, raw_directory, keys, provider, encoding, indirect)

    def close(self) -> None:
        """Forget the keys and close the archive if it was opened by ``open``."""
        if self._closed:
            return
        self._closed = True
        self._keys.wipe()
        if self._indirect:
            self._file.close()

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError('Operation on closed pak.')

    def namelist(self) -> list[str]:
        """Names of the files in central directory order."""
        return [header.filename for header in self._cd_headers]

    def infolist(self) -> list[CDHeader]:
        """Decrypted central directory headers. Compression methods are already the plain ones."""
        return list(self._cd_headers)

    def _sorted_headers(self) -> list[CDHeader]:
        # Going through files in the order they're stored, so input is never read backwards.
        return sorted(self._cd_headers, key=lambda header: header.local_header_relative_offset)

    def decrypt_to(self, output: int | str | bytes | PathLike[str] | PathLike[bytes] | BinaryIO) -> None:
        """Write decrypted archive to ``output``. It can be a path or a writable binary stream,
        the stream doesn't need to be seekable.

        Sections keep their size after decryption, only the order of files and the
        stripped trailer change offsets, so they're counted while writing.
        """

        self._check_open()
        indirect: bool = isinstance(output, (int, str, bytes, PathLike))
        out: BinaryIO = open(output, 'wb') if indirect else output  # type: ignore[arg-type, assignment]

        current_offset: int = 0
        cd_headers: list[CDHeader] = []
        try:
            for header in self._sorted_headers():
                cd_headers.append(replace(header, local_header_relative_offset=current_offset))
                current_offset += decrypt_entry(self._file, out, header, self._keys, self._provider)

            for header in cd_headers:
                out.write(header.encode())

            endof_cd = replace(self._endof_CD, offset=current_offset, comment_length=0)
            out.write(endof_cd.encode())
        finally:
            if indirect:
                out.close()

        digest = self._provider.start_hash()
        digest.update(self._raw_directory)
        digest.update(str(output if indirect else getattr(output, 'name', '')).encode())
        logger.debug('Central directory digest %s', digest.hexdigest())
        logger.info('Wrote %d entries, central directory at offset %d', len(cd_headers), current_offset)

    def extract(self, names: Iterable[str]) -> dict[str, bytes]:
        """Decrypt requested files to memory. Every buffer holds local header, data and data
        descriptor of the file, exactly as they're written by ``decrypt_to``.

        Files that are not requested are never read. Names missing from the archive are skipped.
        """

        self._check_open()
        requested: set[str] = set(names)
        buffers: dict[str, bytes] = {}

        for header in self._sorted_headers():
            if header.filename not in requested:
                continue
            buffer = BytesIO()
            decrypt_entry(self._file, buffer, header, self._keys, self._provider)
            buffers[header.filename] = buffer.getvalue()

        missing = requested - buffers.keys()
        if missing:
            logger.warning('Requested files not found in archive: %s', ', '.join(sorted(missing)))
        return buffers


@dataclass
class Result(Generic[T]):
    """Outcome of a boundary call. ``value`` is only set if ``error`` is ErrorCode.NONE."""

    value: Optional[T] = None
    error: ErrorCode = ErrorCode.NONE

    @property
    def ok(self) -> bool:
        return self.error == ErrorCode.NONE

    @property
    def message(self) -> str:
        return error_to_string(self.error)


def _run(action: Callable[[], T]) -> Result[T]:
    try:
        return Result(action())
    except PakException as e:
        logger.error('%s: %s', error_to_string(e.code), e)
        return Result(error=e.code)
    except Exception:
        logger.exception('Unexpected error')
        return Result(error=ErrorCode.UNKNOWN)


def decrypt_archive(
        input_path: str | PathLike[str],
        output_path: str | PathLike[str],
        public_key: bytes,
        provider: Optional[CryptoProvider] = None
) -> Result[None]:
    """Decrypt the whole archive at ``input_path`` to a standard zip file at ``output_path``.
    On failure ``output_path`` may contain a partially written file.
    """

    def action() -> None:
        with PakFile.open(input_path, public_key, provider) as pak:
            pak.decrypt_to(output_path)

    return _run(action)


def list_entries(
        input_path: str | PathLike[str],
        public_key: bytes,
        provider: Optional[CryptoProvider] = None
) -> Result[list[str]]:
    """List file names of the archive. Only the central directory is decrypted."""

    def action() -> list[str]:
        with PakFile.open(input_path, public_key, provider) as pak:
            return pak.namelist()

    return _run(action)


def extract_entries(
        input_path: str | PathLike[str],
        public_key: bytes,
        names: Iterable[str],
        provider: Optional[CryptoProvider] = None
) -> Result[dict[str, bytes]]:
    """Decrypt only the files named in ``names``. See ``PakFile.extract``."""

    def action() -> dict[str, bytes]:
        with PakFile.open(input_path, public_key, provider) as pak:
            return pak.extract(names)

    return _run(action)
