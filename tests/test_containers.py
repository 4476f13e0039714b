import logging
from struct import error as StructError

import pytest
from elftools.common.exceptions import ELFError

from goprof import NoSymbolsError, containers, load_symbols
from goprof.containers import SYMBOL_EXTRACTORS, elf_symbols, macho_symbols, pe_symbols

from builders import (FuncDef, GO120_MAGIC, build_elf, build_macho, build_pclntab, build_pcln_go11,
                      build_pe, build_symtab_go11, path_name)

FUNCS = [
    FuncDef('main.main', 0x00, 0x40, lines=[(0x40, 7)], file='/src/main.go'),
    FuncDef('main.work', 0x40, 0x40, lines=[(0x20, 20), (0x20, 21)], file='/src/work.go'),
]
PCLNTAB = build_pclntab(FUNCS, GO120_MAGIC)
TEXT_DATA = b'\xcc' * 0x80


def test_extractor_order():
    assert [kind for kind, _ in SYMBOL_EXTRACTORS] == ['elf', 'pe', 'macho']


def test_elf_symbols(tmp_path):
    path = tmp_path / 'prog'
    build_elf(path, [('.text', 0x401000, TEXT_DATA),
                     ('.gosymtab', 0, b''),
                     ('.gopclntab', 0x480000, PCLNTAB)])
    symdata, pclndata, text_start = elf_symbols(str(path))
    assert symdata == b''
    assert pclndata == PCLNTAB
    assert text_start == 0x401000


def test_elf_relro_pclntab(tmp_path):
    path = tmp_path / 'prog'
    build_elf(path, [('.text', 0x1000, TEXT_DATA),
                     ('.gosymtab', 0, b''),
                     ('.data.rel.ro.gopclntab', 0x9000, PCLNTAB)])
    _, pclndata, _ = elf_symbols(str(path))
    assert pclndata == PCLNTAB


def test_elf_missing_pclntab(tmp_path):
    path = tmp_path / 'prog'
    build_elf(path, [('.text', 0x401000, TEXT_DATA), ('.gosymtab', 0, b'')])
    with pytest.raises(ValueError, match='.gopclntab'):
        elf_symbols(str(path))


def test_pe_symbols(tmp_path):
    path = tmp_path / 'prog.exe'
    build_pe(path, [('.text', 0x1000, TEXT_DATA),
                    ('.gosymtab', 0x20000, b''),
                    ('.gopclntab', 0x30000, PCLNTAB)], image_base=0x400000)
    symdata, pclndata, text_start = pe_symbols(str(path))
    assert symdata == b''
    assert pclndata == PCLNTAB
    assert text_start == 0x401000


def test_pe_rejects_elf(tmp_path):
    path = tmp_path / 'prog'
    build_elf(path, [('.text', 0x401000, TEXT_DATA)])
    with pytest.raises(ValueError, match='MZ'):
        pe_symbols(str(path))


def test_macho_symbols(tmp_path):
    path = tmp_path / 'prog'
    build_macho(path, [('__text', 0x100001000, TEXT_DATA),
                       ('__gosymtab', 0x100020000, b''),
                       ('__gopclntab', 0x100030000, PCLNTAB)])
    symdata, pclndata, text_start = macho_symbols(str(path))
    assert symdata == b''
    assert pclndata == PCLNTAB
    assert text_start == 0x100001000


def test_macho_rejects_fat(tmp_path):
    path = tmp_path / 'prog'
    path.write_bytes(b'\xca\xfe\xba\xbe' + b'\x00' * 28)
    with pytest.raises(ValueError, match='fat'):
        macho_symbols(str(path))


@pytest.mark.parametrize('builder,text_name,text_addr,base', [
    (build_elf, '.text', 0x401000, 0),
    (build_pe, '.text', 0x1000, 0x400000),
    (build_macho, '__text', 0x401000, 0),
])
def test_load_symbols_each_format(tmp_path, builder, text_name, text_addr, base):
    path = tmp_path / 'prog'
    if builder is build_macho:
        names = ('__gosymtab', '__gopclntab')
    else:
        names = ('.gosymtab', '.gopclntab')
    builder(path, [(text_name, text_addr, TEXT_DATA),
                   (names[0], 0x500000, b''),
                   (names[1], 0x600000, PCLNTAB)])

    table = load_symbols(str(path))
    start = base + text_addr
    file, line, func = table.pc_to_line(start + 0x50)
    assert (file, line, func.name) == ('/src/work.go', 20, 'main.work')
    assert start + 0x50 - func.entry == 0x10
    assert table.pc_to_line(start + 0x60)[1] == 21


def test_load_symbols_not_an_executable(tmp_path, caplog):
    path = tmp_path / 'notes.txt'
    path.write_text('just some text, long enough to not be an executable header\n' * 4)

    with caplog.at_level(logging.DEBUG, logger='goprof.containers'):
        with pytest.raises(NoSymbolsError) as excinfo:
            load_symbols(str(path))

    err = excinfo.value
    assert [kind for kind, _ in err.failures] == ['elf', 'pe', 'macho']
    lines = str(err).splitlines()
    assert lines[0] == f'no symbols could be loaded from {str(path)!r}'
    assert len(lines) == 4
    assert lines[1].startswith('elf: ')
    assert lines[2].startswith('pe: ')
    assert lines[3].startswith('macho: ')
    assert 'macho' in caplog.text


def test_load_symbols_missing_sections(tmp_path):
    path = tmp_path / 'prog'
    build_elf(path, [('.text', 0x401000, TEXT_DATA)])
    with pytest.raises(NoSymbolsError) as excinfo:
        load_symbols(str(path))
    assert excinfo.value.failures[0] == ('elf', 'no .gosymtab section')


def test_load_symbols_missing_file(tmp_path):
    with pytest.raises(NoSymbolsError) as excinfo:
        load_symbols(str(tmp_path / 'missing'))
    assert len(excinfo.value.failures) == 3


@pytest.fixture
def opened_files(monkeypatch):
    """Record every file the extractors open."""
    files = []

    def tracking_open(*args, **kwargs):
        f = open(*args, **kwargs)
        files.append(f)
        return f

    monkeypatch.setattr(containers, 'open', tracking_open, raising=False)
    return files


@pytest.mark.parametrize('extractor', [elf_symbols, pe_symbols, macho_symbols])
def test_extractor_closes_file_on_failure(tmp_path, opened_files, extractor):
    path = tmp_path / 'notes.txt'
    path.write_bytes(b'not an executable\n' * 8)
    with pytest.raises((ValueError, StructError, ELFError)):
        extractor(str(path))
    assert len(opened_files) == 1
    assert opened_files[0].closed


def test_extractor_closes_file_on_missing_section(tmp_path, opened_files):
    path = tmp_path / 'prog'
    build_elf(path, [('.text', 0x401000, TEXT_DATA), ('.gosymtab', 0, b'')])
    with pytest.raises(ValueError):
        elf_symbols(str(path))
    assert opened_files and all(f.closed for f in opened_files)


def test_load_symbols_closes_every_attempt(tmp_path, opened_files):
    path = tmp_path / 'prog'
    build_macho(path, [('__text', 0x1000, TEXT_DATA),
                       ('__gosymtab', 0x2000, b''),
                       ('__gopclntab', 0x3000, PCLNTAB)])
    load_symbols(str(path))
    assert len(opened_files) == 3
    assert all(f.closed for f in opened_files)


def test_load_symbols_go11_executable(tmp_path):
    symdata = build_symtab_go11([
        ('f', 1, '/'), ('f', 2, 'src'), ('f', 3, 'main.go'),
        ('z', 1, path_name(1, 2, 3)),
        ('T', 0x401000, 'main.main'), ('T', 0x401040, 'main.loop'), ('T', 0x401080, 'etext'),
    ])
    pclndata = build_pcln_go11([(0x0, 3), (0x40, 10), (0x50, 12)])
    path = tmp_path / 'prog'
    build_elf(path, [('.text', 0x401000, TEXT_DATA),
                     ('.gosymtab', 0x480000, symdata),
                     ('.gopclntab', 0x490000, pclndata)])

    table = load_symbols(str(path))
    file, line, func = table.pc_to_line(0x401052)
    assert (file, line, func.name) == ('/src/main.go', 12, 'main.loop')
    assert 0x401052 - func.entry == 0x12
    assert table.pc_to_line(0x401010)[:2] == ('/src/main.go', 3)
