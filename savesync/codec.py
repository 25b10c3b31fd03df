"""Save record codec: JSON document, zlib compression, optional Fernet encryption.

Frame layout (all saves written by this module)::

    b"SSV1" | flags (1 byte) | method (1 byte) | raw size (uint32 BE) | body

``flags`` bit 0 = compressed, bit 1 = encrypted. The body is the UTF-8 JSON
document, compressed first and then encrypted. Decoding undoes encryption
before decompression. Un-framed bytes that parse as a JSON object are
accepted as legacy plain saves.
"""

import json
import logging
import struct
import zlib
from pathlib import Path
from typing import Any, Dict, Optional

from savesync.protocols import CodecError
from savesync.types import CompressionInfo, CompressionMethod, SaveRecord, utc_now

logger = logging.getLogger(__name__)

MAGIC = b"SSV1"
HEADER = struct.Struct(">4sBBI")

FLAG_COMPRESSED = 0x01
FLAG_ENCRYPTED = 0x02

METHOD_CODES = {CompressionMethod.NONE: 0, CompressionMethod.ZLIB: 1}
METHODS_BY_CODE = {code: method for method, code in METHOD_CODES.items()}

EXPORT_FORMAT = "savesync-export"
EXPORT_VERSION = 1


class SaveCodec:
    """Reversible encoding of save records.

    Args:
        compression: Compression method for new saves.
        level: zlib compression level (0-9).
        encryption_key: Fernet key. When set, bodies are encrypted after
            compression and every decode requires the same key.
    """

    def __init__(
        self,
        compression: CompressionMethod = CompressionMethod.ZLIB,
        level: int = 6,
        encryption_key: Optional[str] = None,
    ):
        self.compression = CompressionMethod(compression)
        self.level = level
        self._fernet = None
        if encryption_key:
            from cryptography.fernet import Fernet

            self._fernet = Fernet(encryption_key.encode("ascii"))

    @classmethod
    def from_config(cls, config) -> "SaveCodec":
        return cls(
            compression=config.compression,
            level=config.compression_level,
            encryption_key=config.encryption_key,
        )

    @property
    def encrypts(self) -> bool:
        return self._fernet is not None

    # === Encode ===

    def encode_document(self, document: Dict[str, Any]) -> bytes:
        """Frame a save document.

        Raises:
            CodecError: If the document holds values JSON cannot represent.
        """
        try:
            raw = json.dumps(
                document, sort_keys=True, separators=(",", ":"), allow_nan=False
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise CodecError(f"Save document is not serializable: {e}") from e
        flags = 0
        body = raw
        if self.compression == CompressionMethod.ZLIB:
            body = zlib.compress(raw, self.level)
            flags |= FLAG_COMPRESSED
        if self._fernet is not None:
            body = self._fernet.encrypt(body)
            flags |= FLAG_ENCRYPTED
        header = HEADER.pack(MAGIC, flags, METHOD_CODES[self.compression], len(raw))
        return header + body

    def encode(self, record: SaveRecord) -> bytes:
        return self.encode_document(record.to_dict())

    # === Decode ===

    def decode_document(self, data: bytes) -> Dict[str, Any]:
        """Decode bytes into the raw save document (before migration)."""
        document, _ = self._decode(data)
        return document

    def decode(self, data: bytes) -> SaveRecord:
        """Decode bytes into a SaveRecord with compression metadata filled in."""
        document, info = self._decode(data)
        try:
            record = SaveRecord.from_dict(document)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CodecError(f"Save document is malformed: {e}") from e
        record.compression = info
        return record

    def inspect(self, data: bytes) -> CompressionInfo:
        """Read compression metadata without decoding the body."""
        if not data.startswith(MAGIC):
            return CompressionInfo(raw_size=len(data), encoded_size=len(data))
        if len(data) < HEADER.size:
            raise CodecError("Truncated save header")
        _, flags, method_code, raw_size = HEADER.unpack_from(data)
        return CompressionInfo(
            is_compressed=bool(flags & FLAG_COMPRESSED),
            method=METHODS_BY_CODE.get(method_code, CompressionMethod.NONE),
            raw_size=raw_size,
            encoded_size=len(data),
            is_encrypted=bool(flags & FLAG_ENCRYPTED),
        )

    def _decode(self, data: bytes):
        if not data:
            raise CodecError("Empty save data")

        if not data.startswith(MAGIC):
            return self._decode_legacy(data)

        info = self.inspect(data)
        if info.method not in METHOD_CODES or (
            info.is_compressed and info.method == CompressionMethod.NONE
        ):
            raise CodecError("Unknown compression method in save header")
        body = data[HEADER.size :]

        if info.is_encrypted:
            if self._fernet is None:
                raise CodecError("Save is encrypted but no encryption key is configured")
            from cryptography.fernet import InvalidToken

            try:
                body = self._fernet.decrypt(body)
            except InvalidToken as e:
                raise CodecError("Save could not be decrypted (wrong key or tampered)") from e

        if info.is_compressed:
            try:
                body = zlib.decompress(body)
            except zlib.error as e:
                raise CodecError(f"Save body is not valid zlib data: {e}") from e

        if len(body) != info.raw_size:
            raise CodecError(f"Save size mismatch: header {info.raw_size}, body {len(body)}")

        return self._parse_json(body), info

    def _decode_legacy(self, data: bytes):
        document = self._parse_json(data)
        logger.debug("Decoded un-framed legacy save")
        return document, CompressionInfo(raw_size=len(data), encoded_size=len(data))

    def _parse_json(self, body: bytes) -> Dict[str, Any]:
        try:
            document = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CodecError(f"Save body is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise CodecError("Save document must be a JSON object")
        return document


# === Export / Import ===


def export_record(record: SaveRecord, path: Path) -> Path:
    """Write a self-contained, human-readable export of a record."""
    path = Path(path)
    envelope = {
        "format": EXPORT_FORMAT,
        "version": EXPORT_VERSION,
        "exported_at": utc_now().isoformat(),
        "record": record.to_dict(),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(envelope, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(path)
    return path


def read_export(path: Path) -> Dict[str, Any]:
    """Read an export file and return the raw save document (not yet migrated).

    Raises:
        CodecError: If the file is not a savesync export.
    """
    try:
        envelope = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CodecError(f"Cannot read export {path}: {e}") from e
    if not isinstance(envelope, dict) or envelope.get("format") != EXPORT_FORMAT:
        raise CodecError(f"{path} is not a savesync export")
    if envelope.get("version") != EXPORT_VERSION:
        raise CodecError(f"Unsupported export version: {envelope.get('version')}")
    document = envelope.get("record")
    if not isinstance(document, dict):
        raise CodecError("Export has no record")
    return document
