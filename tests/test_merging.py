import logging

import pytest

from mity.config import MITO, NUCLEAR, MityConfig
from mity.heteroplasmy import HeteroplasmyRecomputer
from mity.logging_utils import (
    AmbiguousMergeConflictError,
    DuplicateSampleError,
    IncompatibleFieldDescriptorError,
    UnsortedInputError,
)
from mity.merging import (
    ContigOrder,
    MergeCursor,
    MergeEngine,
    apply_contig_order,
    build_contig_order,
    merge_headers,
    merge_samples,
    run_merge,
)
from mity.vcf_io import VcfReader, format_record

GENOME = (("MT", 16569), ("chr1", 1000), ("chr2", 1000))


def _reader(vcf_text, *records, **kwargs):
    kwargs.setdefault("contigs", GENOME)
    return VcfReader.from_text(vcf_text(list(records), **kwargs))


def _merge(vcf_text, mito_records, nuclear_records, config=None, **kwargs):
    config = config or MityConfig()
    mito = _reader(vcf_text, *mito_records, **kwargs)
    nuclear = _reader(vcf_text, *nuclear_records, **kwargs)
    header = merge_headers(mito.header, nuclear.header)
    engine = MergeEngine(config, build_contig_order(header, config), header.samples)
    return list(engine.merge(mito, nuclear)), engine


def _loci(records):
    return [(record.contig, record.position) for record in records]


def test_cursor_tracks_current_record():
    cursor = MergeCursor(MITO, iter(["a", "b"]))

    assert cursor.record == "a"
    assert cursor.advance() == "a"
    assert cursor.record == "b"
    assert cursor.advance() == "b"
    assert cursor.exhausted
    assert cursor.consumed == 2


def test_contig_order_places_mitochondrial_contigs():
    first = ContigOrder.from_contigs(["chr1", "chrM", "chr2"], ("MT", "chrM"))
    last = ContigOrder.from_contigs(["chr1", "chrM", "chr2"], ("MT", "chrM"), mito_first=False)

    assert sorted(first.ranks, key=first.ranks.get) == ["chrM", "MT", "chr1", "chr2"]
    assert sorted(last.ranks, key=last.ranks.get) == ["chr1", "chr2", "chrM", "MT"]


def test_unknown_contigs_rank_after_known_ones():
    order = ContigOrder({"MT": 0, "chr1": 1})

    assert order.rank("chrUn") == 2
    assert order.rank("chrX") == 3
    assert order.rank("chrUn") == 2


def test_mt_3243_passes_through_merge_unchanged(vcf_text):
    config = MityConfig(het_low=0.10, het_high=0.98)
    mito = _reader(vcf_text, "MT 3243 . A G 500 . DP=100 GT:DP:AO 0/1:100:95")
    nuclear = _reader(
        vcf_text, "chr1 100 . C T 60 PASS DP=30 GT:DP:AO 0/1:30:15", "chr2 5 . G A 60 PASS DP=30 GT:DP:AO 0/1:30:14"
    )
    recomputed = list(HeteroplasmyRecomputer(config).run(mito))
    expected = format_record(recomputed[0])
    header = merge_headers(mito.header, nuclear.header)
    engine = MergeEngine(config, build_contig_order(header, config), header.samples)

    merged = list(engine.merge(recomputed, nuclear))

    assert _loci(merged) == [("MT", 3243), ("chr1", 100), ("chr2", 5)]
    assert format_record(merged[0]) == expected
    assert merged[0].sample_value(0, "HPL").value == ["heteroplasmic"]


def test_mitochondrial_contig_can_be_ordered_last(vcf_text):
    merged, _ = _merge(
        vcf_text,
        ["MT 3243 . A G 500 . . GT 0/1"],
        ["chr1 100 . C T 60 PASS . GT 0/1"],
        config=MityConfig(mito_first=False),
    )

    assert _loci(merged) == [("chr1", 100), ("MT", 3243)]


def test_ambiguous_conflict_fails(vcf_text):
    with pytest.raises(AmbiguousMergeConflictError) as excinfo:
        _merge(
            vcf_text,
            ["chr1 500 . A G 60 . . GT 0/1"],
            ["chr1 500 . A T 60 PASS . GT 0/1"],
        )

    assert excinfo.value.contig == "chr1"
    assert excinfo.value.position == 500
    assert "chr1:500" in str(excinfo.value)


def test_ambiguous_conflict_can_keep_both(vcf_text, caplog):
    with caplog.at_level(logging.WARNING, logger="mity"):
        merged, engine = _merge(
            vcf_text,
            ["chr1 500 . A G 60 . . GT 0/1"],
            ["chr1 500 . A T 60 PASS . GT 0/1"],
            config=MityConfig(keep_ambiguous=True),
        )

    assert [record.alts for record in merged] == [["G"], ["T"]]
    assert engine.summary.ambiguous_retained == 1
    assert any("ambiguous locus chr1:500" in message for message in caplog.messages)


def test_mitochondrial_stream_wins_mitochondrial_conflict(vcf_text):
    merged, engine = _merge(
        vcf_text,
        ["MT 3243 . A G 500 . . GT 0/1"],
        ["MT 3243 . A C 20 PASS . GT 0/1", "chr1 10 . A C 20 PASS . GT 0/1"],
    )

    assert _loci(merged) == [("MT", 3243), ("chr1", 10)]
    assert merged[0].alts == ["G"]
    assert engine.summary.discarded == 1


def test_keep_duplicates_emits_both_adjacent(vcf_text):
    merged, engine = _merge(
        vcf_text,
        ["MT 3243 . A G 500 . . GT 0/1"],
        ["MT 3243 . A C 20 PASS . GT 0/1", "chr1 10 . A C 20 PASS . GT 0/1"],
        config=MityConfig(keep_duplicates=True),
    )

    assert _loci(merged) == [("MT", 3243), ("MT", 3243), ("chr1", 10)]
    assert [record.alts for record in merged[:2]] == [["G"], ["C"]]
    assert engine.summary.duplicates_retained == 1


def test_nuclear_stream_can_own_unlisted_contigs(vcf_text):
    merged, _ = _merge(
        vcf_text,
        ["chr1 500 . A G 60 . . GT 0/1"],
        ["chr1 500 . A T 60 PASS . GT 0/1"],
        config=MityConfig(nuclear_owns_unlisted=True),
    )

    assert [record.alts for record in merged] == [["T"]]


def test_authoritative_table_overrides_defaults(vcf_text):
    merged, _ = _merge(
        vcf_text,
        ["MT 10 . A G 60 . . GT 0/1"],
        ["MT 10 . A T 60 PASS . GT 0/1"],
        config=MityConfig(authoritative_contigs={"MT": NUCLEAR}),
    )

    assert [record.alts for record in merged] == [["T"]]


def test_losing_stream_records_at_resolved_locus_are_discarded(vcf_text):
    merged, engine = _merge(
        vcf_text,
        ["MT 3243 . A G 500 . . GT 0/1"],
        ["MT 3243 . A C 20 PASS . GT 0/1", "MT 3243 . A T 20 PASS . GT 0/1", "MT 3300 . A T 20 PASS . GT 0/1"],
    )

    assert _loci(merged) == [("MT", 3243), ("MT", 3300)]
    assert engine.summary.discarded == 2


def test_overlapping_records_at_different_positions_are_not_conflicts(vcf_text):
    merged, engine = _merge(
        vcf_text,
        ["MT 100 . ATT A 60 . . GT 0/1"],
        ["MT 101 . T C 60 PASS . GT 0/1"],
    )

    assert _loci(merged) == [("MT", 100), ("MT", 101)]
    assert engine.summary.discarded == 0


def test_output_is_ordered_when_streams_interleave(vcf_text):
    merged, engine = _merge(
        vcf_text,
        ["MT 5 . A G 60 . . GT 0/1", "MT 900 . A G 60 . . GT 0/1", "chr1 50 . A G 60 . . GT 0/1"],
        [
            "MT 400 . C T 60 PASS . GT 0/1",
            "chr1 10 . C T 60 PASS . GT 0/1",
            "chr1 60 . C T 60 PASS . GT 0/1",
            "chr2 1 . C T 60 PASS . GT 0/1",
        ],
        config=MityConfig(nuclear_owns_unlisted=True),
    )
    order = ContigOrder.from_contigs([contig for contig, _ in GENOME], ("MT", "chrM"))
    keys = [order.key(record) for record in merged]

    assert keys == sorted(keys)
    assert len(merged) == 7
    assert engine.summary.emitted == 7
    assert engine.summary.mito_records == 3
    assert engine.summary.nuclear_records == 4


def test_exhausted_stream_drains_the_other(vcf_text):
    merged, _ = _merge(
        vcf_text,
        [],
        ["chr1 10 . C T 60 PASS . GT 0/1", "chr2 1 . C T 60 PASS . GT 0/1"],
    )

    assert _loci(merged) == [("chr1", 10), ("chr2", 1)]


def test_ordering_table_contradicting_input_is_unsorted(vcf_text):
    config = MityConfig(contig_ranks={"MT": 0, "chr2": 1, "chr1": 2})

    with pytest.raises(UnsortedInputError) as excinfo:
        _merge(
            vcf_text,
            [],
            ["chr1 10 . C T 60 PASS . GT 0/1", "chr2 1 . C T 60 PASS . GT 0/1"],
            config=config,
        )

    assert excinfo.value.contig == "chr2"


def test_merge_samples():
    assert merge_samples(["A", "B"], ["B", "A"]) == ["A", "B"]
    assert merge_samples(["A"], ["N1", "N2"]) == ["A", "N1", "N2"]
    assert merge_samples(["A"], []) == ["A"]
    with pytest.raises(DuplicateSampleError, match="B"):
        merge_samples(["A", "B"], ["B", "C"])
    with pytest.raises(DuplicateSampleError):
        merge_samples(["A", "A"], ["N"])


def test_disjoint_samples_are_padded(vcf_text):
    mito = _reader(vcf_text, "MT 10 . A G 60 . . GT:DP:AO 0/1:20:10")
    nuclear = _reader(vcf_text, "chr1 10 . C T 60 PASS . GT:DP 0/1:30", samples=("N1",))
    header = merge_headers(mito.header, nuclear.header)
    engine = MergeEngine(MityConfig(), build_contig_order(header), header.samples)

    merged = list(engine.merge(mito, nuclear))

    assert header.column_line().split("\t")[9:] == ["S1", "N1"]
    assert format_record(merged[0]).split("\t")[9:] == ["0/1:20:10", "."]
    assert format_record(merged[1]).split("\t")[9:] == [".", "0/1:30"]


def test_identical_sample_sets_are_relaid(vcf_text):
    mito = _reader(vcf_text, "MT 10 . A G 60 . . GT 0/1 1/1", samples=("A", "B"))
    nuclear = _reader(vcf_text, "chr1 10 . C T 60 PASS . GT 0/0 0/1", samples=("B", "A"))
    header = merge_headers(mito.header, nuclear.header)
    engine = MergeEngine(MityConfig(), build_contig_order(header), header.samples)

    merged = list(engine.merge(mito, nuclear))

    assert header.samples == ["A", "B"]
    assert format_record(merged[1]).split("\t")[9:] == ["0/1", "0/0"]


def test_merge_headers_rejects_incompatible_descriptors(vcf_text):
    mito = _reader(vcf_text)
    nuclear = _reader(
        vcf_text, meta=['##INFO=<ID=SB,Number=1,Type=Float,Description="Strand bias">']
    )
    clash = _reader(
        vcf_text, meta=['##INFO=<ID=SB,Number=4,Type=Integer,Description="Strand bias">']
    )
    merged = merge_headers(nuclear.header, mito.header)
    assert "SB" in merged.info

    with pytest.raises(IncompatibleFieldDescriptorError, match="SB"):
        merge_headers(nuclear.header, clash.header)


def test_merge_headers_unions_contigs(vcf_text, caplog):
    mito = _reader(vcf_text, contigs=(("MT", 16569),))
    nuclear = _reader(vcf_text, contigs=(("1", 1000), ("MT", 16571)))

    with caplog.at_level(logging.WARNING, logger="mity"):
        header = merge_headers(mito.header, nuclear.header)

    assert list(header.contigs.items()) == [("MT", 16569), ("1", 1000)]
    assert sum(line.startswith("##contig=<ID=MT,") for line in header.meta_lines) == 1
    assert any("Contig MT" in message for message in caplog.messages)


def test_merge_headers_keeps_single_fileformat_and_new_filters(vcf_text):
    mito = _reader(vcf_text)
    nuclear = _reader(vcf_text, meta=['##FILTER=<ID=LowQual,Description="Low quality">'])

    header = merge_headers(mito.header, nuclear.header)

    assert sum(line.startswith("##fileformat") for line in header.meta_lines) == 1
    assert header.meta_lines[0] == "##fileformat=VCFv4.2"
    assert "LowQual" in header.filters


def test_apply_contig_order_rewrites_contig_lines(vcf_text):
    header = _reader(vcf_text, contigs=(("1", 100), ("2", 200), ("MT", 16569))).header.copy()

    apply_contig_order(header, ContigOrder({"MT": 0, "1": 1, "2": 2}))

    contig_lines = [line for line in header.meta_lines if line.startswith("##contig")]
    assert contig_lines == [
        "##contig=<ID=MT,length=16569>",
        "##contig=<ID=1,length=100>",
        "##contig=<ID=2,length=200>",
    ]
    assert list(header.contigs) == ["MT", "1", "2"]
    assert header.meta_lines[0] == "##fileformat=VCFv4.2"


def test_run_merge_writes_ordered_output(tmp_path, data_dir):
    output = tmp_path / "sample.mity.merge.vcf"

    summary = run_merge(str(data_dir / "mito.vcf"), str(data_dir / "nuclear.vcf"), str(output))

    with VcfReader.from_path(output) as reader:
        loci = _loci(reader)
        header = reader.header
    assert loci == [("MT", 73), ("MT", 310), ("MT", 3243), ("MT", 9000), ("1", 500), ("1", 1200), ("2", 800)]
    assert list(header.contigs) == ["MT", "1", "2"]
    assert "LowQual" in header.filters
    assert summary.emitted == 7
    assert summary.mito_records == 4
    assert summary.nuclear_records == 3
    assert summary.output_path == str(output)


def test_run_merge_uses_genome_order(tmp_path, data_dir):
    output = tmp_path / "merged.vcf"
    config = MityConfig(contig_ranks={"1": 0, "2": 1, "MT": 2})

    run_merge(str(data_dir / "mito.vcf"), str(data_dir / "nuclear.vcf"), str(output), config)

    with VcfReader.from_path(output) as reader:
        contigs = [record.contig for record in reader]
    assert contigs == ["1", "1", "2", "MT", "MT", "MT", "MT"]


def test_mitochondrial_contig_last_without_contig_lines(vcf_text):
    merged, _ = _merge(
        vcf_text,
        ["MT 3243 . A G 500 . . GT 0/1"],
        ["chr1 500 . C T 60 PASS . GT 0/1"],
        config=MityConfig(mito_first=False),
        contigs=(),
    )

    assert _loci(merged) == [("chr1", 500), ("MT", 3243)]


def test_undeclared_contigs_follow_nuclear_order(vcf_text):
    merged, _ = _merge(
        vcf_text,
        ["chr2 5 . A G 60 . . GT 0/1"],
        ["chr1 10 . C T 60 PASS . GT 0/1", "chr2 1 . C T 60 PASS . GT 0/1"],
        contigs=(),
    )

    assert _loci(merged) == [("chr1", 10), ("chr2", 1), ("chr2", 5)]


def test_unlisted_nuclear_contig_sorts_before_trailing_mito_block():
    order = ContigOrder.from_contigs(["chr1", "MT"], ("MT", "chrM"), mito_first=False)

    assert order.sort_key("chrUn") < order.sort_key("MT")
    assert order.sort_key("chr1") < order.sort_key("chrUn")


def test_apply_contig_order_places_mito_last(vcf_text):
    header = _reader(vcf_text, contigs=(("MT", 16569), ("1", 100))).header.copy()

    apply_contig_order(header, ContigOrder.from_contigs(header.contigs, ("MT", "chrM"), mito_first=False))

    assert list(header.contigs) == ["1", "MT"]
