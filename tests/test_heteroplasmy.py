import pytest

from mity.config import MityConfig
from mity.heteroplasmy import (
    ABSENT,
    HETEROPLASMIC,
    HOMOPLASMIC,
    UNDEFINED,
    HeteroplasmyRecomputer,
    allele_fraction,
    classify,
)
from mity.vcf_io import VcfReader, format_record


def _read(vcf_text, *records, **kwargs):
    return list(VcfReader.from_text(vcf_text(list(records), **kwargs)))


@pytest.mark.parametrize(
    "fraction, expected",
    [
        (0.98, HOMOPLASMIC),
        (1.0, HOMOPLASMIC),
        (0.97, HETEROPLASMIC),
        (0.01, HETEROPLASMIC),
        (0.0099, ABSENT),
        (0.0, ABSENT),
        (UNDEFINED, ABSENT),
    ],
)
def test_classify_boundaries(fraction, expected):
    assert classify(fraction, 0.01, 0.98) == expected


def test_zero_depth_gives_undefined_fraction():
    assert allele_fraction(5, 0) is UNDEFINED
    assert allele_fraction(None, 10) is UNDEFINED
    assert allele_fraction(5, 20) == 0.25


def test_mt_3243_is_heteroplasmic(vcf_text):
    config = MityConfig(het_low=0.10, het_high=0.98)
    (record,) = _read(vcf_text, "MT 3243 . A G 500 . DP=100 GT:DP:AO 0/1:100:95")

    HeteroplasmyRecomputer(config).recompute(record)

    assert record.sample_value(0, "VAF").value == [pytest.approx(0.95)]
    assert record.sample_value(0, "HPL").value == [HETEROPLASMIC]
    assert format_record(record).split("\t")[8:] == ["GT:DP:AO:VAF:HPL", "0/1:100:95:0.95:heteroplasmic"]


def test_fraction_equal_to_high_threshold_is_homoplasmic(vcf_text):
    (record,) = _read(vcf_text, "MT 73 . A G 900 . DP=50 GT:DP:AO 1/1:50:49")

    HeteroplasmyRecomputer(MityConfig(het_low=0.1, het_high=0.98)).recompute(record)

    assert record.sample_value(0, "HPL").value == [HOMOPLASMIC]


def test_zero_depth_sample_is_absent_and_undefined(vcf_text):
    (record,) = _read(vcf_text, "MT 100 . A G 50 . DP=0 GT:DP:AO 0/1:0:3")

    HeteroplasmyRecomputer().recompute(record)

    assert record.sample_value(0, "VAF").value == [UNDEFINED]
    assert record.sample_value(0, "HPL").value == [ABSENT]
    assert format_record(record).endswith("0/1:0:3:.:absent")


def test_each_alternate_allele_is_scored_against_the_same_total(vcf_text):
    (record,) = _read(vcf_text, "MT 200 . A G,T 50 . DP=100 GT:DP:AO 1/2:100:30,69")

    HeteroplasmyRecomputer(MityConfig(het_low=0.35, het_high=0.6)).recompute(record)

    assert record.sample_value(0, "VAF").value == [pytest.approx(0.30), pytest.approx(0.69)]
    assert record.sample_value(0, "HPL").value == [ABSENT, HOMOPLASMIC]


def test_every_sample_is_recomputed(vcf_text):
    (record,) = _read(
        vcf_text, "MT 300 . C T 50 . DP=60 GT:DP:AO 0/1:40:20 0/0:20:0", samples=("S1", "S2")
    )

    HeteroplasmyRecomputer().recompute(record)

    assert record.sample_value(0, "HPL").value == [HETEROPLASMIC]
    assert record.sample_value(1, "HPL").value == [ABSENT]


def test_missing_read_support_is_left_unchanged_with_warning(vcf_text):
    (record,) = _read(vcf_text, "MT 400 . C T 50 . DP=60 GT:DP 0/1:40")
    before = format_record(record)
    recomputer = HeteroplasmyRecomputer()

    recomputer.recompute(record)

    assert format_record(record) == before
    assert len(record.warnings) == 1
    assert "AO" in record.warnings[0]
    assert recomputer.warning_count == 1
    assert recomputer.records_recomputed == 0


def test_nuclear_records_are_not_touched(vcf_text):
    (record,) = _read(
        vcf_text, "1 500 . C T 50 . DP=60 GT:DP:AO 0/1:40:20", contigs=(("1", 1000),)
    )
    before = format_record(record)

    HeteroplasmyRecomputer().recompute(record)

    assert format_record(record) == before
    assert record.warnings == []


def test_strand_bias_ratio(vcf_text):
    (record,) = _read(vcf_text, "MT 500 . A G,C 50 . SAF=50,0;SAR=45,0 GT:DP:AO 1/2:100:95,0")

    HeteroplasmyRecomputer().recompute(record)

    assert record.info["SBR"].value == [pytest.approx(50 / 95), None]


def test_prepare_header_declares_new_fields(vcf_text):
    header = VcfReader.from_text(vcf_text([])).header.copy()

    HeteroplasmyRecomputer().prepare_header(header)

    assert header.formats["VAF"].number == "A"
    assert header.formats["HPL"].type == "String"
    assert header.info["SBR"].type == "Float"
    assert sum(line.startswith("##FORMAT=<ID=VAF,") for line in header.meta_lines) == 1


def test_field_names_are_configurable(vcf_text):
    config = MityConfig(alt_count_field="AD_ALT", depth_field="RD", fraction_field="AF")
    (record,) = _read(
        vcf_text,
        "MT 600 . A G 50 . . GT:RD:AD_ALT 0/1:10:5",
        meta=[
            '##FORMAT=<ID=RD,Number=1,Type=Integer,Description="Depth">',
            '##FORMAT=<ID=AD_ALT,Number=A,Type=Integer,Description="Alt depth">',
        ],
    )

    HeteroplasmyRecomputer(config).recompute(record)

    assert record.sample_value(0, "AF").value == [0.5]


def _without(text, prefix):
    return "".join(line for line in text.splitlines(keepends=True) if not line.startswith(prefix))


@pytest.mark.parametrize("undeclared", ["##FORMAT=<ID=DP,", "##FORMAT=<ID=AO,"])
def test_undeclared_read_support_fields_are_read_as_numbers(vcf_text, undeclared):
    text = _without(vcf_text(["MT 3243 . A G 500 . DP=100 GT:DP:AO 0/1:100:95"]), undeclared)
    (record,) = list(VcfReader.from_text(text))

    HeteroplasmyRecomputer(MityConfig(het_low=0.10, het_high=0.98)).recompute(record)

    assert record.sample_value(0, "VAF").value == [pytest.approx(0.95)]
    assert record.sample_value(0, "HPL").value == [HETEROPLASMIC]
    assert format_record(record).endswith("0/1:100:95:0.95:heteroplasmic")


def test_undeclared_multi_allelic_counts(vcf_text):
    text = _without(vcf_text(["MT 200 . A G,T 50 . DP=100 GT:DP:AO 1/2:100:30,69"]), "##FORMAT=<ID=AO,")
    (record,) = list(VcfReader.from_text(text))

    HeteroplasmyRecomputer().recompute(record)

    assert record.sample_value(0, "VAF").value == [pytest.approx(0.30), pytest.approx(0.69)]


def test_non_numeric_read_support_is_undefined(vcf_text):
    text = _without(vcf_text(["MT 300 . A G 50 . DP=100 GT:DP:AO 0/1:high:95"]), "##FORMAT=<ID=DP,")
    (record,) = list(VcfReader.from_text(text))

    HeteroplasmyRecomputer().recompute(record)

    assert record.sample_value(0, "VAF").value == [UNDEFINED]
    assert record.sample_value(0, "HPL").value == [ABSENT]
