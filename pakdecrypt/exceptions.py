from .constants import ErrorCode


class PakException(Exception):
    """Base class for all pakdecrypt exceptions."""

    code: ErrorCode = ErrorCode.UNKNOWN

class FileNotFound(PakException):
    """Archive doesn't exist or can't be opened."""

    code = ErrorCode.FILE_NOT_FOUND

class ReadKeyFailed(PakException):
    """Public key couldn't be read or imported."""

    code = ErrorCode.READ_KEY_FAILED

class CdrNotFound(PakException):
    """No consistent end of central directory record found."""

    code = ErrorCode.CDR_NOT_FOUND

class NoExtendedHeader(PakException):
    """Trailer after the end record doesn't start with an extended header."""

    code = ErrorCode.NO_EXTENDED_HEADER

class UnsupportedEncryption(PakException):
    """Archive is encrypted with a scheme other than the stream cipher key table."""

    code = ErrorCode.UNSUPPORTED_ENCRYPTION

class BadFile(PakException):
    """Bad file given to unpack."""

class TruncatedArchive(BadFile):
    """Archive ended in the middle of a record or section."""

class EncryptionError(PakException):
    """Base class for all encryption related exceptions."""

    code = ErrorCode.DECRYPTION_FAILED

class DecryptionFailed(EncryptionError):
    """Key material couldn't be unwrapped or data didn't decrypt to a valid record."""

class BadDirectory(DecryptionFailed):
    """Decrypted central directory is malformed."""

class CipherUnavailable(UnsupportedEncryption):
    """Block cipher library can't be loaded in this interpreter."""
