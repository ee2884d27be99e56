import asyncio
import posixpath
import stat
from dataclasses import dataclass
from typing import List, Union


@dataclass
class EntryInfo:
    name: str
    type: str
    path: str


class SSHFiles:
    """SFTP-backed filesystem with the same surface as ``sandbox.files``."""

    def __init__(self, session):
        self.session = session

    async def write(self, path: str, data: Union[str, bytes]) -> EntryInfo:
        return await asyncio.to_thread(self.write_sync, path, data)

    async def read(self, path: str) -> str:
        return await asyncio.to_thread(self.read_sync, path)

    async def list(self, path: str) -> List[EntryInfo]:
        return await asyncio.to_thread(self.list_sync, path)

    async def make_dir(self, path: str) -> bool:
        return await asyncio.to_thread(self.make_dir_sync, path)

    def write_sync(self, path: str, data: Union[str, bytes]) -> EntryInfo:
        payload = data.encode("utf-8") if isinstance(data, str) else data
        sftp = self.session.open_sftp()
        try:
            with sftp.file(path, "wb") as handle:
                handle.write(payload)
        finally:
            sftp.close()
        return EntryInfo(name=posixpath.basename(path), type="file", path=path)

    def read_sync(self, path: str) -> str:
        sftp = self.session.open_sftp()
        try:
            with sftp.file(path, "rb") as handle:
                data = handle.read()
        finally:
            sftp.close()
        return data.decode("utf-8", errors="replace")

    def list_sync(self, path: str) -> List[EntryInfo]:
        sftp = self.session.open_sftp()
        try:
            attrs = sftp.listdir_attr(path)
        finally:
            sftp.close()
        entries = []
        for attr in sorted(attrs, key=lambda a: a.filename):
            is_dir = attr.st_mode is not None and stat.S_ISDIR(attr.st_mode)
            entries.append(EntryInfo(
                name=attr.filename,
                type="dir" if is_dir else "file",
                path=posixpath.join(path, attr.filename),
            ))
        return entries

    def make_dir_sync(self, path: str) -> bool:
        sftp = self.session.open_sftp()
        try:
            try:
                sftp.stat(path)
                return False
            except FileNotFoundError:
                pass
            sftp.mkdir(path)
            return True
        finally:
            sftp.close()
