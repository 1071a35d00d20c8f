import asyncio

import pytest

from sitechat.manifest import FileInfo, FileManifest, create_filename, parse_filename


def test_filename_round_trip():
    info = FileInfo(owner_id="vs_abc123", iteration=4, file_index=17)

    name = create_filename(info)

    assert name == "crawl:vs_abc123:4:17.pdf"
    assert parse_filename(name) == info


@pytest.mark.parametrize(
    "name",
    [
        "report.pdf",
        "crawl:vs_1:3.pdf",
        "crawl:vs_1:x:0.pdf",
        "crawl:vs_1:1:0.txt",
        "crawl::1:0.pdf",
        "prefix-crawl:vs_1:1:0.pdf",
        "",
    ],
)
def test_foreign_names_do_not_parse(name):
    assert parse_filename(name) is None


def test_create_filename_rejects_unparseable_owner():
    with pytest.raises(ValueError):
        create_filename(FileInfo(owner_id="vs:1", iteration=0, file_index=0))
    with pytest.raises(ValueError):
        create_filename(FileInfo(owner_id="", iteration=0, file_index=0))
    with pytest.raises(ValueError):
        create_filename(FileInfo(owner_id="vs_1", iteration=-1, file_index=0))


def test_sentinel_is_index_zero():
    assert FileInfo("vs_1", 2, 0).is_sentinel
    assert not FileInfo("vs_1", 2, 1).is_sentinel


def test_scans_skip_foreign_and_other_owners(provider):
    provider.add_file("notes.txt")
    provider.add_file("crawl:vs_2:0:0.pdf")
    mine = provider.add_file("crawl:vs_1:0:1.pdf")
    manifest = FileManifest(provider)

    entries = asyncio.run(manifest.list_for_owner("vs_1"))

    assert [e.file_id for e in entries] == [mine]
    assert not asyncio.run(manifest.sentinel_present("vs_1", 0))


def test_delete_older_than_is_strict(provider):
    for iteration in (1, 2, 3):
        for index in (0, 1):
            provider.add_file(f"crawl:vs_1:{iteration}:{index}.pdf")
    provider.add_file("crawl:vs_2:1:0.pdf")
    provider.add_file("unrelated.pdf")
    manifest = FileManifest(provider)

    deleted = asyncio.run(manifest.delete_older_than("vs_1", 3))

    assert sorted(e.filename for e in deleted) == [
        "crawl:vs_1:1:0.pdf",
        "crawl:vs_1:1:1.pdf",
        "crawl:vs_1:2:0.pdf",
        "crawl:vs_1:2:1.pdf",
    ]
    assert provider.filenames() == [
        "crawl:vs_1:3:0.pdf",
        "crawl:vs_1:3:1.pdf",
        "crawl:vs_2:1:0.pdf",
        "unrelated.pdf",
    ]


def test_delete_detaches_attached_files(provider):
    file_id = provider.add_file("crawl:vs_1:0:0.pdf")
    provider.attached["vs_1"] = [file_id]
    manifest = FileManifest(provider)

    asyncio.run(manifest.delete_all("vs_1"))

    assert provider.attached["vs_1"] == []
    assert provider.files == {}
