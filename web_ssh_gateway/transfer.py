"""
Batch copy / move / cross-host transfer

Each source is processed on its own: a failing item is recorded in its
TransferResult and the batch carries on. Only shared preconditions (the
sources list, the destination directory) abort a batch up front.
"""

import logging
from typing import Awaitable, Callable, List, Optional

from .errors import GatewayError, InvalidRequest
from .filesystem import Filesystem
from .models import TransferOperation, TransferResult

logger = logging.getLogger(__name__)


def _validate(sources: List[str], destination: str):
    if not sources or not isinstance(sources, list):
        raise InvalidRequest("Sources array is required")
    if not destination:
        raise InvalidRequest("Destination path is required")


async def _run_item(source: str, action: Callable[[], Awaitable[str]]) -> TransferResult:
    try:
        dest = await action()
        return TransferResult(source=source, dest=dest, success=True)
    except GatewayError as e:
        return TransferResult(source=source, dest="", success=False, error=e.message)
    except Exception as e:
        logger.error(f"Unexpected error processing {source}: {e}")
        return TransferResult(source=source, dest="", success=False, error=str(e))


class TransferOrchestrator:
    """Runs batch operations over the Filesystem capability interface"""

    def __init__(self, resolve: Callable[[Optional[str]], Filesystem]):
        self._resolve = resolve

    async def copy(
        self, sources: List[str], destination: str, slot_id: Optional[str] = None
    ) -> List[TransferResult]:
        _validate(sources, destination)
        fs = self._resolve(slot_id)
        await fs.ensure_directory(destination)

        results = []
        for source in sources:
            results.append(
                await _run_item(source, lambda s=source: fs.copy_into(s, destination))
            )
        return results

    async def move(
        self, sources: List[str], destination: str, slot_id: Optional[str] = None
    ) -> List[TransferResult]:
        _validate(sources, destination)
        fs = self._resolve(slot_id)
        await fs.ensure_directory(destination)

        results = []
        for source in sources:
            results.append(
                await _run_item(source, lambda s=source: fs.move_into(s, destination))
            )
        return results

    async def transfer(
        self,
        sources: List[str],
        destination: str,
        source_slot: Optional[str] = None,
        dest_slot: Optional[str] = None,
        operation: str = TransferOperation.COPY.value,
    ) -> List[TransferResult]:
        """Copy or move entries between two backends.

        Same-host requests are delegated to copy/move. Cross-host items are
        staged through gateway memory one file at a time. For ``move`` the
        source is deleted only after its transfer succeeded, and a failed
        delete is not reported.
        """
        _validate(sources, destination)
        try:
            operation = TransferOperation(operation)
        except ValueError:
            raise InvalidRequest(f"Unknown transfer operation: {operation}")
        source_slot = source_slot or None
        dest_slot = dest_slot or None

        if source_slot == dest_slot:
            if operation == TransferOperation.MOVE:
                return await self.move(sources, destination, source_slot)
            return await self.copy(sources, destination, source_slot)

        src_fs = self._resolve(source_slot)
        dst_fs = self._resolve(dest_slot)
        await dst_fs.ensure_directory(destination)

        results = []
        for source in sources:

            async def _transfer_one(source=source):
                target = dst_fs.join(destination, src_fs.basename(source))
                await copy_tree(src_fs, source, dst_fs, target)
                return target

            results.append(await _run_item(source, _transfer_one))

        if operation == TransferOperation.MOVE:
            for result in results:
                if not result.success:
                    continue
                try:
                    await src_fs.delete(result.source)
                except Exception as e:
                    logger.debug(f"Cleanup after move failed for {result.source}: {e}")

        logger.info(
            f"Transfer {operation.value} {source_slot or 'local'} -> {dest_slot or 'local'}: "
            f"{sum(r.success for r in results)}/{len(results)} succeeded"
        )
        return results


async def copy_tree(src_fs: Filesystem, src_path: str, dst_fs: Filesystem, dst_path: str):
    """Copy a file or directory tree between two backends, one file in memory at a time."""
    entry = await src_fs.stat(src_path)
    if not entry.is_directory:
        data = await src_fs.read_bytes(src_path)
        await dst_fs.write_bytes(dst_path, data)
        return

    await dst_fs.make_directory(dst_path)
    for child in await src_fs.scandir(src_path):
        await copy_tree(src_fs, child.path, dst_fs, dst_fs.join(dst_path, child.name))
