"""
Streaming container codec for backup artifacts.

Artifacts are encrypted with AES-256-CBC (PKCS7 padding) under a key derived
from the plan passphrase with PBKDF2-HMAC-SHA256. Everything needed to
re-derive the key except the passphrase is stored in the container header:

    magic "AWDB" | version (1 byte) | iterations (int32 LE)
    | salt length (int32 LE) | salt | IV length (int32 LE) | IV | ciphertext
"""

import os
import struct
import logging
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from keepsafe.errors import CorruptHeader, UnsupportedContainerVersion, DecryptionFailed


logger = logging.getLogger(__name__)

MAGIC = b'AWDB'
FORMAT_VERSION = 1
SALT_SIZE = 16
IV_SIZE = 16
KEY_SIZE = 32
CHUNK_SIZE = 1024 * 1024

# Upper bound accepted when reading header lengths back
MAX_HEADER_FIELD = 1024


@dataclass
class ContainerHeader:
    version: int
    iterations: int
    salt: bytes
    iv: bytes


def derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    """
    Derive a 256-bit AES key from a passphrase.

    Args:
        passphrase: Plan passphrase
        salt: Random salt stored in the container header
        iterations: PBKDF2 iteration count stored in the container header

    Returns:
        32-byte key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive((passphrase or '').encode('utf-8'))


def write_header(output: BinaryIO, header: ContainerHeader):
    output.write(MAGIC + bytes([header.version]))
    output.write(struct.pack('<i', header.iterations))
    output.write(struct.pack('<i', len(header.salt)))
    output.write(header.salt)
    output.write(struct.pack('<i', len(header.iv)))
    output.write(header.iv)


def _read_exact(stream: BinaryIO, count: int, field: str) -> bytes:
    data = b''
    while len(data) < count:
        chunk = stream.read(count - len(data))
        if not chunk:
            raise CorruptHeader(
                f"Unexpected end of stream while reading {field}",
                {'expected': count, 'read': len(data)}
            )
        data += chunk
    return data


def _read_length(stream: BinaryIO, field: str) -> int:
    (length,) = struct.unpack('<i', _read_exact(stream, 4, f"{field} length"))
    if length <= 0 or length > MAX_HEADER_FIELD:
        raise CorruptHeader(f"Invalid {field} length: {length}")
    return length


def read_header(stream: BinaryIO) -> ContainerHeader:
    """
    Read the container header in its fixed field order.

    Args:
        stream: Binary stream positioned at the start of the container

    Returns:
        Parsed ContainerHeader; the stream is left at the first ciphertext byte

    Raises:
        CorruptHeader: If the magic tag does not match or a field is truncated
        UnsupportedContainerVersion: If the version byte is unknown
    """
    prefix = _read_exact(stream, len(MAGIC) + 1, 'magic tag')
    if prefix[:len(MAGIC)] != MAGIC:
        raise CorruptHeader("Invalid encrypted backup header")

    version = prefix[len(MAGIC)]
    if version != FORMAT_VERSION:
        raise UnsupportedContainerVersion(
            f"Unsupported container version: {version}",
            {'supported': FORMAT_VERSION}
        )

    (iterations,) = struct.unpack('<i', _read_exact(stream, 4, 'iteration count'))
    if iterations <= 0:
        raise CorruptHeader(f"Invalid iteration count: {iterations}")

    salt = _read_exact(stream, _read_length(stream, 'salt'), 'salt')
    iv_length = _read_length(stream, 'IV')
    if iv_length != IV_SIZE:
        raise CorruptHeader(f"Invalid IV length: {iv_length}")
    iv = _read_exact(stream, iv_length, 'IV')

    return ContainerHeader(version=version, iterations=iterations, salt=salt, iv=iv)


def encrypt_file(
    input_path: str,
    output_path: str,
    passphrase: str,
    iterations: int,
    progress: Optional[Callable[[int], None]] = None,
    cancellation_check: Optional[Callable[[], None]] = None
):
    """
    Encrypt a file into a self-describing container.

    A fresh salt and IV are generated for every call. On cancellation the
    partial output is left in place; the caller owns its cleanup.

    Args:
        input_path: Plain input file
        output_path: Container file to create (overwritten)
        passphrase: Passphrase to derive the key from
        iterations: PBKDF2 iteration count
        progress: Optional callback receiving 0-100 after each chunk
        cancellation_check: Optional callable raising when cancelled
    """
    if iterations <= 0:
        raise ValueError(f"Iteration count must be positive: {iterations}")

    header = ContainerHeader(
        version=FORMAT_VERSION,
        iterations=iterations,
        salt=os.urandom(SALT_SIZE),
        iv=os.urandom(IV_SIZE)
    )
    key = derive_key(passphrase, header.salt, iterations)

    encryptor = Cipher(algorithms.AES(key), modes.CBC(header.iv)).encryptor()
    padder = padding.PKCS7(algorithms.AES.block_size).padder()

    total = os.path.getsize(input_path)
    done = 0

    with open(input_path, 'rb') as src, open(output_path, 'wb') as dst:
        write_header(dst, header)

        while True:
            if cancellation_check:
                cancellation_check()

            chunk = src.read(CHUNK_SIZE)
            if not chunk:
                break

            dst.write(encryptor.update(padder.update(chunk)))
            done += len(chunk)

            if total > 0 and progress:
                progress(min(100, max(0, done * 100 // total)))

        dst.write(encryptor.update(padder.finalize()) + encryptor.finalize())

    logger.debug(f"Encrypted {done} bytes into {output_path}")


def decrypt_file(
    input_path: str,
    output_path: str,
    passphrase: str,
    cancellation_check: Optional[Callable[[], None]] = None
):
    """
    Decrypt a container produced by encrypt_file.

    Args:
        input_path: Container file
        output_path: Plain output file to create (overwritten)
        passphrase: Passphrase used at encryption time
        cancellation_check: Optional callable raising when cancelled

    Raises:
        CorruptHeader: If the header cannot be read
        DecryptionFailed: If the padding check fails (wrong passphrase or
            damaged ciphertext). The partial output file is removed.
    """
    with open(input_path, 'rb') as src:
        header = read_header(src)
        key = derive_key(passphrase, header.salt, header.iterations)

        decryptor = Cipher(algorithms.AES(key), modes.CBC(header.iv)).decryptor()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()

        try:
            with open(output_path, 'wb') as dst:
                while True:
                    if cancellation_check:
                        cancellation_check()

                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(unpadder.update(decryptor.update(chunk)))

                try:
                    dst.write(unpadder.update(decryptor.finalize()) + unpadder.finalize())
                except ValueError as e:
                    raise DecryptionFailed(
                        "Decryption failed (wrong passphrase or corrupted data)",
                        {'reason': str(e)}
                    )
        except DecryptionFailed:
            _remove_quietly(output_path)
            raise


def _remove_quietly(path: str):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove partial output {path}: {e}")
