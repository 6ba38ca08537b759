"""On-disk file variants.

Which variants are kept is decided by the file's StorageMode; ``persist``
dispatches on it and each arm yields (path, size) pairs for the encrypted and
decrypted copies.
"""
from __future__ import annotations

import logging
import os

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable

from efscloud.utils.dataModels import File, StorageMode

logger = logging.getLogger(__name__)


@dataclass
class Variant:
    path: str = ""
    size: int = 0


@dataclass
class FileVariants:
    encrypted: Variant = field(default_factory=Variant)
    decrypted: Variant = field(default_factory=Variant)


def _write(path: Path, data: bytes) -> Variant:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("wb") as f:
        f.write(data)
    os.replace(tmp, path)
    return Variant(path=str(path), size=len(data))


class FileStore:

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def encrypted_path(self, file_id: str, thumbnail: bool = False) -> Path:
        suffix = ".thumb.bin" if thumbnail else ".bin"
        return self.root / "encrypted" / f"{file_id}{suffix}"

    def decrypted_path(self, file_id: str, name: str, thumbnail: bool = False) -> Path:
        safe_name = Path(name).name or file_id
        folder = "thumbnails" if thumbnail else "decrypted"
        return self.root / folder / file_id / safe_name

    def persist(self, file_id: str, name: str, encrypted: bytes, plaintext: bytes,
                mode: StorageMode, thumbnail: bool = False) -> FileVariants:
        enc = lambda: _write(self.encrypted_path(file_id, thumbnail), encrypted)
        dec = lambda: _write(self.decrypted_path(file_id, name, thumbnail), plaintext)
        arms: Dict[StorageMode, Callable[[], FileVariants]] = {
            StorageMode.ENCRYPTED_ONLY: lambda: FileVariants(encrypted=enc()),
            StorageMode.DECRYPTED_ONLY: lambda: FileVariants(decrypted=dec()),
            StorageMode.HYBRID: lambda: FileVariants(encrypted=enc(), decrypted=dec()),
        }
        return arms[StorageMode(mode)]()

    @staticmethod
    def apply(file: File, variants: FileVariants, thumbnail: bool = False) -> File:
        if thumbnail:
            file.encrypted_thumbnail_path = variants.encrypted.path
            file.encrypted_thumbnail_size = variants.encrypted.size
            file.thumbnail_path = variants.decrypted.path
            file.thumbnail_size = variants.decrypted.size
        else:
            file.encrypted_file_path = variants.encrypted.path
            file.encrypted_file_size = variants.encrypted.size
            file.file_path = variants.decrypted.path
            file.file_size = variants.decrypted.size
        return file

    @staticmethod
    def clear(file: File) -> File:
        """Forget every local variant on the record (the disk is left to ``purge``)."""
        FileStore.apply(file, FileVariants())
        return FileStore.apply(file, FileVariants(), thumbnail=True)

    def purge(self, paths: Iterable[str]) -> None:
        for p in paths:
            if not p:
                continue
            try:
                Path(p).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("could not remove %s: %s", p, e)
