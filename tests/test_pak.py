import os
import sys
import unittest
import zipfile
from contextlib import redirect_stderr, redirect_stdout
from io import BytesIO, StringIO
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

from Crypto.PublicKey import RSA

from pakdecrypt import ErrorCode, PakFile, decrypt_archive, extract_entries, list_entries
from pakdecrypt.__main__ import KEY_ENV_VARIABLE, main
from pakdecrypt._pak_algorithms import read_end_record
from pakdecrypt.constants import *
from pakdecrypt.exceptions import *
from pakdecrypt.utils.PakCrypto import CryptoProvider

from pak_builder import AES_PROVIDER, HAS_TWOFISH, Entry, PakBuilder, generate_key_pair, public_key_blob

LOREM: bytes = b'Lorem ipsum dolor sit amet, consectetur adipiscing elit. ' * 40


class PakTestCase(unittest.TestCase):

    @classmethod
    def setUpClass(cls) -> None:
        cls.private_key = generate_key_pair()
        cls.public_key = public_key_blob(cls.private_key)
        cls.builder = PakBuilder(cls.private_key)

    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.folder = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def write_pak(self, entries: list[Entry], name: str = 'archive.pak', **kwargs) -> str:
        path = self.folder / name
        path.write_bytes(self.builder.build(entries, **kwargs))
        return str(path)

    def decrypt(self, pak_path: str) -> str:
        output = str(self.folder / 'out.zip')
        result = decrypt_archive(pak_path, output, self.public_key, AES_PROVIDER)
        self.assertEqual(ErrorCode.NONE, result.error, result.message)
        return output


class TestDecrypt(PakTestCase):

    def test_single_file(self) -> None:
        output = self.decrypt(self.write_pak([Entry('a.txt', b'hello')]))

        with zipfile.ZipFile(output) as z:
            self.assertEqual(['a.txt'], z.namelist())
            self.assertEqual(zipfile.ZIP_STORED, z.getinfo('a.txt').compress_type)
            self.assertEqual(b'hello', z.read('a.txt'))

    def test_deflated_file(self) -> None:
        output = self.decrypt(self.write_pak([Entry('lorem.txt', LOREM, DEFLATE_AND_STREAMCIPHER_KEYTABLE)]))

        with zipfile.ZipFile(output) as z:
            info = z.getinfo('lorem.txt')
            self.assertEqual(zipfile.ZIP_DEFLATED, info.compress_type)
            self.assertLess(info.compress_size, len(LOREM))
            self.assertEqual(LOREM, z.read('lorem.txt'))

    def test_empty_file(self) -> None:
        output = self.decrypt(self.write_pak([Entry('empty', b''), Entry('b.txt', b'b')]))

        with zipfile.ZipFile(output) as z:
            self.assertEqual(b'', z.read('empty'))
            self.assertEqual(b'b', z.read('b.txt'))

    def test_directory_order(self) -> None:
        entries = [
            Entry('first.txt', b'1' * 10),
            Entry('data/second.bin', os.urandom(3000), extra=b'\xfe\xca\x04\x00abcd'),
            Entry('third.txt', LOREM, DEFLATE_AND_STREAMCIPHER_KEYTABLE, comment='third'),
            Entry('fourth.txt', b'')
        ]
        output = self.decrypt(self.write_pak(entries, directory_order=[3, 1, 2, 0]))
        data = Path(output).read_bytes()

        with zipfile.ZipFile(output) as z:
            infos = z.infolist()
            self.assertEqual(['first.txt', 'data/second.bin', 'third.txt', 'fourth.txt'], [i.filename for i in infos])
            offsets = [info.header_offset for info in infos]
            self.assertEqual(sorted(offsets), offsets)
            self.assertEqual(len(set(offsets)), len(offsets))
            for info in infos:
                self.assertEqual(LOCAL_HEADER_SIGNATURE, data[info.header_offset:info.header_offset + 4])
            for entry in entries:
                self.assertEqual(entry.data, z.read(entry.name))
            self.assertEqual(b'third', z.getinfo('third.txt').comment)
            self.assertIsNone(z.testzip())

    def test_data_descriptor(self) -> None:
        entries = [
            Entry('with_descriptor.txt', LOREM, descriptor=True),
            Entry('plain.txt', b'plain'),
            Entry('deflated.txt', LOREM, DEFLATE_AND_STREAMCIPHER_KEYTABLE, descriptor=True)
        ]
        output = self.decrypt(self.write_pak(entries))

        with zipfile.ZipFile(output) as z:
            self.assertTrue(z.getinfo('with_descriptor.txt').flag_bits & 0x08)
            for entry in entries:
                self.assertEqual(entry.data, z.read(entry.name))

            # Descriptor is copied including its signature.
            second = z.getinfo('plain.txt').header_offset
            self.assertEqual(b'PK\x07\x08', Path(output).read_bytes()[second - 16:second - 12])

    def test_short_data_descriptor(self) -> None:
        entries = [Entry('a.txt', b'hello', descriptor=True, short_descriptor=True), Entry('b.txt', LOREM)]
        path = self.write_pak(entries)
        output = self.decrypt(path)
        data = Path(output).read_bytes()

        with zipfile.ZipFile(output) as z:
            second = z.getinfo('b.txt').header_offset
            self.assertEqual(LOCAL_HEADER_SIZE + 5 + 5 + DATA_DESCRIPTOR_SIZE, second)
            self.assertEqual(END_RECORD_SIGNATURE + bytes(8), data[second - DATA_DESCRIPTOR_SIZE:second])
            self.assertEqual(LOCAL_HEADER_SIGNATURE, data[second:second + 4])
            self.assertEqual(b'hello', z.read('a.txt'))
            self.assertEqual(LOREM, z.read('b.txt'))

        buffers = extract_entries(path, self.public_key, ['a.txt'], AES_PROVIDER).value
        self.assertEqual(LOCAL_HEADER_SIZE + 5 + 5 + DATA_DESCRIPTOR_SIZE, len(buffers['a.txt']))

    def test_no_trailer_in_output(self) -> None:
        pak_path = self.write_pak([Entry('a.txt', b'hello')])
        output = self.decrypt(pak_path)

        data = Path(output).read_bytes()
        self.assertEqual(len(Path(pak_path).read_bytes()) - TRAILER_SIZE, len(data))
        self.assertEqual(END_RECORD_SIGNATURE, data[-END_RECORD_SIZE:-END_RECORD_SIZE + 4])
        self.assertEqual(b'\x00\x00', data[-2:])

    def test_stream_output(self) -> None:
        pak = self.builder.build([Entry('a.txt', b'hello'), Entry('b.txt', LOREM)])
        output = BytesIO()
        with PakFile.open(BytesIO(pak), self.public_key, AES_PROVIDER) as p:
            p.decrypt_to(output)

        with zipfile.ZipFile(output) as z:
            self.assertEqual(LOREM, z.read('b.txt'))

    @unittest.skipUnless(HAS_TWOFISH, 'twofish is not available')
    def test_twofish(self) -> None:
        provider = CryptoProvider()
        pak = PakBuilder(self.private_key, provider).build([Entry('a.txt', b'hello'), Entry('b.txt', LOREM, descriptor=True)])
        output = BytesIO()
        with PakFile.open(BytesIO(pak), self.public_key) as p:
            p.decrypt_to(output)

        with zipfile.ZipFile(output) as z:
            self.assertEqual(b'hello', z.read('a.txt'))
            self.assertEqual(LOREM, z.read('b.txt'))


class TestPakFile(PakTestCase):

    def test_listing(self) -> None:
        entries = [Entry('b.txt', b'b'), Entry('a/a.txt', b'a', DEFLATE_AND_STREAMCIPHER_KEYTABLE)]
        pak = self.builder.build(entries, directory_order=[1, 0])

        with PakFile.open(BytesIO(pak), self.public_key, AES_PROVIDER) as p:
            self.assertEqual(['a/a.txt', 'b.txt'], p.namelist())
            self.assertEqual([DEFLATE, STORED], [header.compression_method for header in p.infolist()])
            self.assertEqual(['Deflate', 'Stored'], [header.compression_name for header in p.infolist()])

        result = list_entries(self.write_pak(entries), self.public_key, AES_PROVIDER)
        self.assertTrue(result.ok)
        self.assertEqual(['b.txt', 'a/a.txt'], result.value)

    def test_list_does_not_read_files(self) -> None:
        pak = bytearray(self.builder.build([Entry('a.txt', b'hello')]))
        pak[0] ^= 0xFF
        path = self.folder / 'broken.pak'
        path.write_bytes(pak)

        self.assertEqual(['a.txt'], list_entries(str(path), self.public_key, AES_PROVIDER).value)
        result = decrypt_archive(str(path), str(self.folder / 'out.zip'), self.public_key, AES_PROVIDER)
        self.assertEqual(ErrorCode.DECRYPTION_FAILED, result.error)

    def test_extract(self) -> None:
        entries = [Entry('a.txt', b'hello'), Entry('b.txt', LOREM), Entry('c.txt', b'c', descriptor=True)]
        path = self.write_pak(entries)

        with self.assertLogs('pakdecrypt', 'WARNING') as logs:
            result = extract_entries(path, self.public_key, ['c.txt', 'a.txt', 'missing.txt'], AES_PROVIDER)
        self.assertTrue(result.ok)
        self.assertIn('missing.txt', logs.output[0])
        self.assertEqual({'a.txt', 'c.txt'}, set(result.value))

        buffer = result.value['a.txt']
        self.assertEqual(LOCAL_HEADER_SIGNATURE, buffer[:4])
        self.assertEqual(b'\x00\x00', buffer[8:10])
        self.assertEqual(b'a.txt', buffer[LOCAL_HEADER_SIZE:LOCAL_HEADER_SIZE + 5])
        self.assertTrue(buffer.endswith(b'hello'))
        self.assertEqual(LOCAL_HEADER_SIZE + 5 + 5, len(buffer))

        # Data descriptor is part of the buffer.
        self.assertEqual(LOCAL_HEADER_SIZE + 5 + 1 + 16, len(result.value['c.txt']))

    def test_extract_skips_other_files(self) -> None:
        pak = bytearray(self.builder.build([Entry('a.txt', b'hello'), Entry('b.txt', b'world')]))
        pak[0] ^= 0xFF  # breaks a.txt only

        with PakFile.open(BytesIO(bytes(pak)), self.public_key, AES_PROVIDER) as p:
            self.assertEqual(b'world', p.extract(['b.txt'])['b.txt'][-5:])
            self.assertRaises(DecryptionFailed, lambda: p.extract(['a.txt']))

    def test_close(self) -> None:
        pak = self.builder.build([Entry('a.txt', b'hello')])
        stream = BytesIO(pak)
        with PakFile.open(stream, self.public_key, AES_PROVIDER) as p:
            keys = p._keys
        self.assertFalse(stream.closed)
        self.assertEqual(bytes(16), bytes(keys.cipher_keys[0]))
        self.assertRaises(ValueError, lambda: p.extract(['a.txt']))
        self.assertRaises(ValueError, lambda: p.decrypt_to(BytesIO()))
        p.close()

        with PakFile.open(self.write_pak([Entry('a.txt', b'hello')]), self.public_key, AES_PROVIDER) as p:
            f = p._file
        self.assertTrue(f.closed)

    def test_open_errors(self) -> None:
        self.assertRaises(TypeError, lambda: PakFile.open(1.5, self.public_key, AES_PROVIDER))
        self.assertRaises(FileNotFound, lambda: PakFile.open(str(self.folder / 'missing.pak'), self.public_key))

        stream = BytesIO(b'not an archive' * 10)
        self.assertRaises(CdrNotFound, lambda: PakFile.open(stream, self.public_key, AES_PROVIDER))
        self.assertFalse(stream.closed)


class TestErrorCodes(PakTestCase):

    def code(self, pak: bytes, public_key: bytes = None) -> ErrorCode:
        path = self.folder / 'test.pak'
        path.write_bytes(pak)
        result = list_entries(str(path), public_key or self.public_key, AES_PROVIDER)
        self.assertIsNone(result.value)
        return result.error

    def test_missing_file(self) -> None:
        result = decrypt_archive(str(self.folder / 'missing.pak'), str(self.folder / 'out.zip'), self.public_key, AES_PROVIDER)
        self.assertEqual(ErrorCode.FILE_NOT_FOUND, result.error)
        self.assertEqual('File not found', result.message)
        self.assertFalse((self.folder / 'out.zip').exists())

    def test_bad_key(self) -> None:
        pak = self.builder.build([Entry('a.txt', b'hello')])
        self.assertEqual(ErrorCode.READ_KEY_FAILED, self.code(pak, b'\x30\x03\x02\x01\x00'))
        self.assertEqual(ErrorCode.READ_KEY_FAILED, self.code(pak, b'garbage'))

    def test_no_end_record(self) -> None:
        self.assertEqual(ErrorCode.CDR_NOT_FOUND, self.code(b'x' * 5000))
        self.assertEqual(ErrorCode.CDR_NOT_FOUND, self.code(b''))

        pak = self.builder.build([Entry('a.txt', b'hello')])
        self.assertEqual(ErrorCode.CDR_NOT_FOUND, self.code(pak[:-1]))

    def test_no_extended_header(self) -> None:
        entries = [Entry('a.txt', b'hello')]
        self.assertEqual(ErrorCode.NO_EXTENDED_HEADER, self.code(self.builder.build(entries, trailer=b'\x01\x02\x03')))
        self.assertEqual(ErrorCode.NO_EXTENDED_HEADER, self.code(self.builder.build(entries, trailer=b'')))

        trailer = self.builder.trailer(extended_header_size=12)
        self.assertEqual(ErrorCode.NO_EXTENDED_HEADER, self.code(self.builder.build(entries, trailer=trailer)))

    def test_unsupported_encryption(self) -> None:
        for encryption_type in (EncryptionType.NONE, EncryptionType.STREAM_CIPHER, EncryptionType.TEA):
            trailer = self.builder.trailer(encryption_type=encryption_type)
            pak = self.builder.build([Entry('a.txt', b'hello')], trailer=trailer)
            self.assertEqual(ErrorCode.UNSUPPORTED_ENCRYPTION, self.code(pak))

    def test_truncated_trailer(self) -> None:
        trailer = self.builder.trailer()[:-RSA_KEY_MESSAGE_LENGTH]
        pak = self.builder.build([Entry('a.txt', b'hello')], trailer=trailer)
        self.assertEqual(ErrorCode.DECRYPTION_FAILED, self.code(pak))

    def test_truncated_directory(self) -> None:
        pak = bytearray(self.builder.build([Entry('a.txt', b'hello')]))
        end_record = len(pak) - TRAILER_SIZE - END_RECORD_SIZE
        pak[end_record + 16:end_record + 20] = (len(pak) - 5).to_bytes(4, 'little')
        self.assertEqual(ErrorCode.DECRYPTION_FAILED, self.code(bytes(pak)))

    def test_twofish_unavailable(self) -> None:
        path = self.write_pak([Entry('a.txt', b'hello')])
        with patch.dict(sys.modules, {'twofish': None}), self.assertLogs('pakdecrypt', 'ERROR') as logs:
            result = list_entries(path, self.public_key, CryptoProvider())
        self.assertEqual(ErrorCode.UNSUPPORTED_ENCRYPTION, result.error)
        self.assertIn('Twofish is not available', logs.output[0])

    def test_wrong_public_key(self) -> None:
        pak = self.builder.build([Entry('a.txt', b'hello')])
        other = public_key_blob(RSA.generate(1024))
        self.assertEqual(ErrorCode.DECRYPTION_FAILED, self.code(pak, other))

    def test_corrupted_key_block(self) -> None:
        pak = bytearray(self.builder.build([Entry('a.txt', b'hello')]))
        first_key = len(pak) - TRAILER_SIZE + EXTENDED_HEADER_SIZE + SIGNING_HEADER_SIZE + 4 + RSA_KEY_MESSAGE_LENGTH
        pak[first_key + 5] ^= 0x01
        self.assertEqual(ErrorCode.DECRYPTION_FAILED, self.code(bytes(pak)))

    def test_corrupted_directory(self) -> None:
        pak = bytearray(self.builder.build([Entry('a.txt', b'hello')]))
        directory = read_end_record(BytesIO(bytes(pak))).offset
        pak[directory] ^= 0x01
        self.assertEqual(ErrorCode.DECRYPTION_FAILED, self.code(bytes(pak)))

    def test_unexpected_error(self) -> None:
        path = self.write_pak([Entry('a.txt', b'hello')])
        with patch('pakdecrypt.pakfile.PakFile.namelist', side_effect=RuntimeError('boom')):
            with self.assertLogs('pakdecrypt', 'ERROR'):
                result = list_entries(path, self.public_key, AES_PROVIDER)
        self.assertEqual(ErrorCode.UNKNOWN, result.error)
        self.assertEqual('Unknown error', result.message)


@patch('pakdecrypt.pakfile.default_provider', return_value=AES_PROVIDER)
class TestCommandLine(PakTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.key_path = self.folder / 'key.der'
        self.key_path.write_bytes(self.public_key)
        self.pak_path = self.write_pak([Entry('a.txt', b'hello'), Entry('dir/b.txt', LOREM, DEFLATE_AND_STREAMCIPHER_KEYTABLE)])

    def run_main(self, *args: str) -> tuple[int, str]:
        stdout = StringIO()
        with redirect_stdout(stdout), redirect_stderr(StringIO()):
            code = main(['-k', str(self.key_path), *args])
        return code, stdout.getvalue()

    def test_list(self, _) -> None:
        code, output = self.run_main('list', self.pak_path)
        self.assertEqual(ErrorCode.NONE, code)
        self.assertEqual(['a.txt', 'dir/b.txt'], output.splitlines())

        code, output = self.run_main('list', '-l', self.pak_path)
        self.assertEqual(ErrorCode.NONE, code)
        self.assertIn('Stored', output.splitlines()[0])
        self.assertIn('Deflate', output.splitlines()[1])

    def test_decrypt(self, _) -> None:
        output = str(self.folder / 'out.zip')
        code, _ = self.run_main('decrypt', self.pak_path, output)
        self.assertEqual(ErrorCode.NONE, code)
        with zipfile.ZipFile(output) as z:
            self.assertEqual(LOREM, z.read('dir/b.txt'))

    def test_extract(self, _) -> None:
        target = self.folder / 'files'
        code, _ = self.run_main('extract', self.pak_path, 'dir/b.txt', '-o', str(target))
        self.assertEqual(ErrorCode.NONE, code)
        self.assertTrue((target / 'dir' / 'b.txt').read_bytes().startswith(LOCAL_HEADER_SIGNATURE))
        self.assertFalse((target / 'a.txt').exists())

    def test_extract_outside_folder(self, _) -> None:
        pak_path = self.write_pak([Entry('../evil.txt', b'evil')], name='evil.pak')
        target = self.folder / 'files'
        with self.assertLogs('pakdecrypt', 'WARNING'):
            code, _ = self.run_main('extract', pak_path, '../evil.txt', '-o', str(target))
        self.assertEqual(ErrorCode.NONE, code)
        self.assertFalse((self.folder / 'evil.txt').exists())

    def test_errors(self, _) -> None:
        code, _ = self.run_main('list', str(self.folder / 'missing.pak'))
        self.assertEqual(ErrorCode.FILE_NOT_FOUND, code)

        code, _ = self.run_main('list', '-l', str(self.folder / 'missing.pak'))
        self.assertEqual(ErrorCode.FILE_NOT_FOUND, code)

        self.key_path = self.folder / 'missing.der'
        code, _ = self.run_main('list', self.pak_path)
        self.assertEqual(ErrorCode.READ_KEY_FAILED, code)

    def test_list_name_not_utf8(self, _) -> None:
        pak_path = self.write_pak([Entry('caf\udce9.txt', b'latin'), Entry('b.txt', b'b')], name='latin.pak')

        code, output = self.run_main('list', pak_path)
        self.assertEqual(ErrorCode.NONE, code)
        self.assertEqual(['caf\\xe9.txt', 'b.txt'], output.splitlines())

        code, output = self.run_main('list', '-l', pak_path)
        self.assertEqual(ErrorCode.NONE, code)
        self.assertTrue(output.splitlines()[0].endswith('caf\\xe9.txt'))

    def test_long_listing_unexpected_error(self, _) -> None:
        with patch('pakdecrypt.pakfile.PakFile.infolist', side_effect=RuntimeError('boom')):
            with self.assertLogs('pakdecrypt', 'ERROR'):
                code, _ = self.run_main('list', '-l', self.pak_path)
        self.assertEqual(ErrorCode.UNKNOWN, code)

    def test_key_from_environment(self, _) -> None:
        with patch.dict(os.environ, {KEY_ENV_VARIABLE: str(self.key_path)}), redirect_stdout(StringIO()) as stdout:
            self.assertEqual(ErrorCode.NONE, main(['list', self.pak_path]))
        self.assertIn('a.txt', stdout.getvalue())

        with patch.dict(os.environ), redirect_stderr(StringIO()):
            os.environ.pop(KEY_ENV_VARIABLE, None)
            with self.assertRaises(SystemExit):
                main(['list', self.pak_path])


if __name__ == '__main__':
    unittest.main()
