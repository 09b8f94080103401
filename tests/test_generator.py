import random

import pytest

import generator
from extsort import SortConfig, sort_file


def test_generate_file_shape(tmp_path):
    path = tmp_path / 'source.txt'
    written = generator.generate_file(str(path), 200, 5, random.Random(1))

    data = path.read_bytes()
    assert written == len(data)
    lines = data.split(b'\n')[:-1]
    assert len(lines) == 200
    assert all(1 <= len(line) <= 5 for line in lines)
    assert all(line.isalpha() for line in lines)


def test_generate_file_is_reproducible_with_seed(tmp_path):
    first = tmp_path / 'first.txt'
    second = tmp_path / 'second.txt'
    generator.generate_file(str(first), 50, 10, random.Random(42))
    generator.generate_file(str(second), 50, 10, random.Random(42))
    assert first.read_bytes() == second.read_bytes()


@pytest.mark.parametrize('lines_count, line_max_size', [(-1, 5), (10, 0)])
def test_generate_file_rejects_invalid_sizes(tmp_path, lines_count, line_max_size):
    with pytest.raises(ValueError):
        generator.generate_file(str(tmp_path / 'source.txt'), lines_count, line_max_size)


def test_main_writes_output(tmp_path):
    path = tmp_path / 'generated.txt'
    generator.main([
        '--lines_count', '10',
        '--line_max_size', '3',
        '--output', str(path),
        '--seed', '3',
    ])
    assert len(path.read_bytes().split(b'\n')[:-1]) == 10


def test_generated_file_sorts(tmp_path):
    source = tmp_path / 'source.txt'
    generator.generate_file(str(source), 500, 20, random.Random(5))
    config = SortConfig(
        block_size=64,
        work_dir=str(tmp_path / 'work'),
        result_path=str(tmp_path / 'result.txt'),
        workers=3,
    )

    result = sort_file(str(source), config)

    expected = sorted(source.read_bytes().split(b'\n')[:-1])
    assert (tmp_path / 'result.txt').read_bytes().split(b'\n')[:-1] == expected
    assert result.chunks_count == 8
