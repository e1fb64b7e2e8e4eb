from .constants import ErrorCode, error_to_string
from .exceptions import *
from .pakfile import PakFile, Result, decrypt_archive, extract_entries, list_entries
from .utils.PakCrypto import CryptoProvider, default_provider

__version__ = '1.0.0'
