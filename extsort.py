import argparse
import concurrent.futures
import logging
import os
import sys
import time
import typing

import psutil

logger = logging.getLogger(__name__)

MAX_BLOCK_SIZE = 200000
PAIR_SIZE = 2
MB_DIVIDER = 1024 * 1024

EXTENSION = '.txt'
TEMP_PREFIX = 'temp-'
STAGING_PREFIX = 'next-'
RESULT_FILE_NAME = f'result{EXTENSION}'


class ExternalSortError(Exception):
    pass


class MalformedRecordError(ExternalSortError):
    def __init__(self, line_number: int, length: int, limit: int) -> None:
        super().__init__(
            f'record at line {line_number} is {length} bytes long, '
            f'limit is {limit}'
        )
        self.line_number = line_number
        self.length = length
        self.limit = limit


class SortConfig(typing.NamedTuple):
    block_size: int = MAX_BLOCK_SIZE
    work_dir: str = '.'
    result_path: str = RESULT_FILE_NAME
    workers: int = 1
    max_record_length: typing.Optional[int] = None


class SortResult(typing.NamedTuple):
    path: str
    chunks_count: int
    rounds: int


def chunk_path(work_dir: str, index: int) -> str:
    return os.path.join(work_dir, f'{index}{EXTENSION}')


def staging_path(work_dir: str, index: int) -> str:
    return os.path.join(work_dir, f'{STAGING_PREFIX}{index}{EXTENSION}')


def temp_path(path: str) -> str:
    head, tail = os.path.split(path)
    return os.path.join(head, f'{TEMP_PREFIX}{tail}')


def read_records(
        file: typing.BinaryIO,
        max_record_length: typing.Optional[int] = None,
) -> typing.Iterator[bytes]:
    """Yield the lines of ``file`` with their trailing newline removed."""
    for line_number, line in enumerate(file, 1):
        record = line[:-1] if line.endswith(b'\n') else line
        if max_record_length is not None and len(record) > max_record_length:
            raise MalformedRecordError(line_number, len(record), max_record_length)
        yield record


def write_records(file: typing.BinaryIO, records: typing.Iterable[bytes]) -> None:
    file.writelines(record + b'\n' for record in records)


def write_chunk(path: str, block: typing.List[bytes]) -> None:
    block.sort()
    with open(path, 'wb') as chunk:
        write_records(chunk, block)
    logger.debug('Wrote chunk %s with %d records', path, len(block))


def partition(
        records: typing.Iterable[bytes], block_size: int, work_dir: str,
) -> int:
    """Split ``records`` into sorted chunk files ``1..n`` and return ``n``.

    No chunk holds more than ``block_size`` records, so ``block_size``
    bounds the memory used while sorting.
    """
    if block_size < 1:
        raise ValueError(f'block_size must be positive, got {block_size}')

    chunks_count = 0
    block = []
    for record in records:
        block.append(record)
        if len(block) == block_size:
            chunks_count += 1
            write_chunk(chunk_path(work_dir, chunks_count), block)
            block = []

    if block:
        chunks_count += 1
        write_chunk(chunk_path(work_dir, chunks_count), block)

    return chunks_count


def merge_pair(first: str, second: str, destination: str) -> str:
    """Merge two sorted files into ``destination`` and delete both inputs.

    On equal records the one from ``first`` is written first.
    """
    in_flight = temp_path(destination)
    with open(first, 'rb') as first_file, \
            open(second, 'rb') as second_file, \
            open(in_flight, 'wb') as out:
        first_records = read_records(first_file)
        second_records = read_records(second_file)
        left = next(first_records, None)
        right = next(second_records, None)

        while left is not None and right is not None:
            if right < left:
                out.write(right + b'\n')
                right = next(second_records, None)
            else:
                out.write(left + b'\n')
                left = next(first_records, None)

        if left is not None:
            out.write(left + b'\n')
            write_records(out, first_records)
        elif right is not None:
            out.write(right + b'\n')
            write_records(out, second_records)

    os.remove(first)
    os.remove(second)
    os.replace(in_flight, destination)
    logger.debug('Merged %s and %s into %s', first, second, destination)
    return destination


def merge_round(
        work_dir: str,
        files_count: int,
        executor: concurrent.futures.Executor,
        workers: int = 1,
) -> int:
    """Merge chunk files ``1..files_count`` pairwise into ``1..ceil(n/2)``.

    At most ``workers`` merges are submitted at once; after a failed merge
    no further merge is started and the error is raised once the running
    ones have finished.
    """
    indexes = list(range(1, files_count + 1))
    pairs = [indexes[i:i + PAIR_SIZE] for i in range(0, files_count, PAIR_SIZE)]
    merges = [
        (chunk_path(work_dir, pair[0]), chunk_path(work_dir, pair[1]),
         staging_path(work_dir, position))
        for position, pair in enumerate(pairs, 1)
        if len(pair) == PAIR_SIZE
    ]

    running = set()
    failure = None
    for first, second, staged in merges:
        if len(running) >= workers:
            done, running = concurrent.futures.wait(
                running, return_when=concurrent.futures.FIRST_COMPLETED,
            )
            failure = first_failure(done)
            if failure is not None:
                break
        running.add(executor.submit(merge_pair, first, second, staged))

    # every merge has to finish before files take their next-round numbers
    done, _ = concurrent.futures.wait(running)
    if failure is None:
        failure = first_failure(done)
    if failure is not None:
        raise failure

    if pairs and len(pairs[-1]) < PAIR_SIZE:
        index, position = pairs[-1][0], len(pairs)
        os.replace(chunk_path(work_dir, index), chunk_path(work_dir, position))
        logger.debug('Carried chunk %d forward as %d', index, position)
    for position in range(1, len(merges) + 1):
        os.replace(staging_path(work_dir, position), chunk_path(work_dir, position))

    return len(pairs)


def first_failure(
        futures: typing.Iterable[concurrent.futures.Future],
) -> typing.Optional[BaseException]:
    for future in futures:
        error = future.exception()
        if error is not None:
            return error
    return None


def publish_empty(result_path: str) -> None:
    in_flight = temp_path(result_path)
    with open(in_flight, 'wb'):
        pass
    os.replace(in_flight, result_path)


def sort_file(source: str, config: SortConfig = SortConfig()) -> SortResult:
    if config.workers < 1:
        raise ValueError(f'workers must be positive, got {config.workers}')
    if config.max_record_length is not None and config.max_record_length < 1:
        raise ValueError(
            f'max_record_length must be positive, got {config.max_record_length}'
        )

    os.makedirs(config.work_dir, exist_ok=True)

    start = time.monotonic()
    with open(source, 'rb') as source_file:
        chunks_count = partition(
            read_records(source_file, config.max_record_length),
            config.block_size,
            config.work_dir,
        )
    logger.info(
        'Partitioned %s into %d chunks in %.3f seconds',
        source, chunks_count, time.monotonic() - start,
    )

    if chunks_count == 0:
        publish_empty(config.result_path)
        logger.info('Source %s is empty, wrote empty %s', source, config.result_path)
        return SortResult(config.result_path, 0, 0)

    files_count = chunks_count
    rounds = 0
    with concurrent.futures.ThreadPoolExecutor(max_workers=config.workers) as executor:
        while files_count > 1:
            rounds += 1
            round_start = time.monotonic()
            new_files_count = merge_round(
                config.work_dir, files_count, executor, config.workers,
            )
            logger.info(
                'Round %d merged %d files into %d in %.3f seconds',
                rounds, files_count, new_files_count,
                time.monotonic() - round_start,
            )
            files_count = new_files_count

    os.replace(chunk_path(config.work_dir, 1), config.result_path)
    logger.info(
        'Sorted %s into %s in %.3f seconds',
        source, config.result_path, time.monotonic() - start,
    )
    return SortResult(config.result_path, chunks_count, rounds)


def log_memory_statistics() -> None:
    rss = psutil.Process().memory_info().rss
    memory = psutil.virtual_memory()
    logger.info(
        'Memory: process rss = %d mb, available = %d mb, total = %d mb',
        rss // MB_DIVIDER, memory.available // MB_DIVIDER, memory.total // MB_DIVIDER,
    )


def main(argv: typing.Optional[typing.List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='Sort a newline-delimited file with pairwise external merge sort',
    )
    parser.add_argument('--source', required=True)
    parser.add_argument('--result', default=RESULT_FILE_NAME)
    parser.add_argument('--work_dir', default='.')
    parser.add_argument('--block_size', type=int, default=MAX_BLOCK_SIZE,
                        help='maximum number of records per initial chunk')
    parser.add_argument('--workers', type=int, default=1,
                        help='number of pair merges run at once within a round')
    parser.add_argument('--max_record_length', type=int, default=None,
                        help='fail on records longer than this many bytes')
    parser.add_argument('--log_level', type=str.upper, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    config = SortConfig(
        block_size=args.block_size,
        work_dir=args.work_dir,
        result_path=args.result,
        workers=args.workers,
        max_record_length=args.max_record_length,
    )

    log_memory_statistics()
    try:
        sort_file(args.source, config)
    except (ExternalSortError, OSError, ValueError) as e:
        logger.error('Sorting %s failed: %s', args.source, e)
        return 1
    log_memory_statistics()
    return 0


if __name__ == '__main__':
    sys.exit(main())
