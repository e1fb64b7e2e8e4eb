"""Command line interface.

    pakdecrypt decrypt INPUT OUTPUT -k KEY
    pakdecrypt list INPUT -k KEY [-l]
    pakdecrypt extract INPUT NAME [NAME ...] -k KEY [-o DIR]

The key file may also be given with the PAKDECRYPT_KEY environment variable.
Exit status is the numeric error code, 0 on success.
"""
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from .constants import ErrorCode, error_to_string
from .exceptions import PakException, ReadKeyFailed
from .pakfile import PakFile, decrypt_archive, extract_entries, list_entries

logger = logging.getLogger('pakdecrypt')

KEY_ENV_VARIABLE: str = 'PAKDECRYPT_KEY'


def load_key(path: str) -> bytes:
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise ReadKeyFailed(f"Key file {path!r} can't be read ({e.strerror}).") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pakdecrypt',
        description='Decrypt encrypted pak archives into standard zip files.'
    )
    parser.add_argument('-v', '--verbose', action='count', default=0, help='-v for progress, -vv for debug output')
    parser.add_argument(
        '-k', '--key',
        default=os.environ.get(KEY_ENV_VARIABLE),
        help=f'RSA public key file (DER or PEM), defaults to ${KEY_ENV_VARIABLE}'
    )
    commands = parser.add_subparsers(dest='command', required=True)

    decrypt = commands.add_parser('decrypt', help='decrypt the whole archive')
    decrypt.add_argument('input', help='encrypted archive')
    decrypt.add_argument('output', help='zip file to write')

    listing = commands.add_parser('list', help='list files of the archive')
    listing.add_argument('input', help='encrypted archive')
    listing.add_argument('-l', '--long', action='store_true', help='show method, sizes and CRC')

    extract = commands.add_parser('extract', help='decrypt single files')
    extract.add_argument('input', help='encrypted archive')
    extract.add_argument('names', nargs='+', help='names of the files inside the archive')
    extract.add_argument('-o', '--output-dir', default='.', help='folder to write files to')

    return parser


def _printable(name: str) -> str:
    # Names that aren't valid utf-8 keep their raw bytes as surrogates, shown escaped.
    return name.encode('utf-8', 'surrogateescape').decode('utf-8', 'backslashreplace')


def _long_listing(path: str, public_key: bytes) -> int:
    try:
        with PakFile.open(path, public_key) as pak:
            for header in pak.infolist():
                print(f'{header.compression_name:<10} {header.compressed_size:>12} {header.uncompressed_size:>12} '
                      f'{header.crc:08x}  {_printable(header.filename)}')
    except PakException as e:
        print(f'{error_to_string(e.code)}: {e}', file=sys.stderr)
        return e.code
    except Exception:
        logger.exception('Unexpected error')
        print(error_to_string(ErrorCode.UNKNOWN), file=sys.stderr)
        return ErrorCode.UNKNOWN
    return ErrorCode.NONE


def _write_files(buffers: dict[str, bytes], output_dir: str) -> None:
    root = Path(output_dir).resolve()
    for name, data in buffers.items():
        target = (root / name.replace('\\', '/')).resolve()
        if root not in target.parents:
            logger.warning('Skipping %s, it points outside of %s', _printable(name), root)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        print(_printable(str(target)))


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format='%(levelname)s %(name)s: %(message)s')

    if not args.key:
        parser.error(f'no key file given, use --key or set {KEY_ENV_VARIABLE}')

    try:
        public_key = load_key(args.key)
    except ReadKeyFailed as e:
        print(f'{error_to_string(e.code)}: {e}', file=sys.stderr)
        return e.code

    if args.command == 'list' and args.long:
        return _long_listing(args.input, public_key)

    if args.command == 'decrypt':
        result = decrypt_archive(args.input, args.output, public_key)
    elif args.command == 'list':
        result = list_entries(args.input, public_key)
        if result.ok:
            for name in result.value:
                print(_printable(name))
    else:
        result = extract_entries(args.input, public_key, args.names)
        if result.ok:
            _write_files(result.value, args.output_dir)

    if not result.ok:
        print(result.message, file=sys.stderr)
    return result.error


if __name__ == '__main__':
    sys.exit(main())
