import argparse
import logging
import random
import string
import typing

logger = logging.getLogger(__name__)

SOURCE_FILE_NAME = 'source.txt'


def generate_file(
        path: str,
        lines_count: int,
        line_max_size: int,
        rng: typing.Optional[random.Random] = None,
) -> int:
    """Write ``lines_count`` random alphabetic lines to ``path``.

    Returns the number of bytes written.
    """
    if lines_count < 0:
        raise ValueError(f'lines_count must not be negative, got {lines_count}')
    if line_max_size < 1:
        raise ValueError(f'line_max_size must be positive, got {line_max_size}')
    rng = rng or random.Random()

    written = 0
    with open(path, 'wb') as source:
        for _ in range(lines_count):
            line = ''.join(
                rng.choices(string.ascii_letters, k=rng.randint(1, line_max_size))
            ).encode('ascii') + b'\n'
            written += source.write(line)
    return written


def main(argv: typing.Optional[typing.List[str]] = None) -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument('--lines_count', type=int, required=True)
    parser.add_argument('--line_max_size', type=int, required=True)
    parser.add_argument('--output', default=SOURCE_FILE_NAME)
    parser.add_argument('--seed', type=int, default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    written = generate_file(
        args.output, args.lines_count, args.line_max_size,
        random.Random(args.seed),
    )
    logger.info('Generated %s: %d lines, %d bytes', args.output, args.lines_count, written)


if __name__ == '__main__':
    main()
