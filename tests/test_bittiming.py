import pytest

from canutils.bittiming import (
    COMMON_BITRATES,
    CONTROLLERS,
    BitTiming,
    BitTimingError,
    RefClock,
    UnknownControllerError,
    calc_bittiming,
    calculate,
    cia_sample_point,
    controller_names,
    fixup_bittiming,
    format_bit_timing,
    format_btr_at91,
    format_btr_mcp251x,
    format_btr_rcar_can,
    format_btr_sja1000,
    main,
    update_sample_point,
)

SJA1000 = CONTROLLERS[0]
SJA_CLK = 8000000


def _by_name(name):
    return next(c for c in CONTROLLERS if c.name == name)


def _sja_500k():
    return calc_bittiming(BitTiming(bitrate=500000), SJA1000.const, SJA_CLK)


@pytest.mark.parametrize(
    "bitrate, expected",
    [(1000000, 750), (800000, 800), (500000, 875), (125000, 875)],
)
def test_cia_sample_point(bitrate, expected):
    assert cia_sample_point(bitrate) == expected


def test_controller_names():
    assert controller_names() == [
        "sja1000",
        "mscan",
        "at91",
        "flexcan",
        "mcp251x",
        "mcp251xfd",
        "ti_hecc",
        "rcar_can",
    ]


def test_calc_sja1000_500k_invariants():
    bt = _sja_500k()
    assert bt.bitrate == 500000
    assert bt.sample_point == 875
    assert bt.sjw == 1
    assert bt.tq == bt.brp * 10**9 // SJA_CLK
    assert 1 + bt.prop_seg + bt.phase_seg1 + bt.phase_seg2 == SJA_CLK // (bt.brp * 500000)
    assert bt.prop_seg == (bt.prop_seg + bt.phase_seg1) // 2


def test_format_btr_sja1000_500k():
    assert format_btr_sja1000(_sja_500k()) == "0x00 0x1c"


def test_calc_does_not_mutate_input():
    request = BitTiming(bitrate=500000)
    calc_bittiming(request, SJA1000.const, SJA_CLK)
    assert request == BitTiming(bitrate=500000)


def test_calc_impossible_bitrate_raises():
    with pytest.raises(BitTimingError):
        calc_bittiming(BitTiming(bitrate=1), SJA1000.const, SJA_CLK)


def test_calc_zero_bitrate_raises():
    with pytest.raises(BitTimingError):
        calc_bittiming(BitTiming(bitrate=0), SJA1000.const, SJA_CLK)


@pytest.mark.parametrize("tseg", range(5, 21))
def test_update_sample_point_invariants(tseg):
    sp = update_sample_point(SJA1000.const, 875, tseg)
    assert sp.tseg1 + sp.tseg2 == tseg
    assert sp.sample_point <= 875
    assert sp.error == 875 - sp.sample_point


@pytest.mark.parametrize("controller", CONTROLLERS, ids=lambda c: c.name)
def test_calc_common_bitrates_within_limits(controller):
    checked = 0
    for clock in controller.ref_clocks:
        for bitrate in COMMON_BITRATES:
            try:
                bt = calc_bittiming(BitTiming(bitrate=bitrate), controller.const, clock.clk)
            except BitTimingError:
                continue
            assert controller.const.brp_min <= bt.brp <= controller.const.brp_max
            assert bt.tq == bt.brp * 10**9 // clock.clk
            assert bt.sjw == 1
            checked += 1
    assert checked > 0


def test_fixup_roundtrip():
    bt = _sja_500k()
    fixed = fixup_bittiming(
        BitTiming(
            prop_seg=bt.prop_seg,
            phase_seg1=bt.phase_seg1,
            phase_seg2=bt.phase_seg2,
            brp=bt.brp,
        ),
        SJA1000.const,
        SJA_CLK,
    )
    assert fixed.bitrate == bt.bitrate
    assert fixed.sample_point == bt.sample_point
    assert fixed.tq == bt.tq
    assert fixed.sjw == 1


def test_fixup_derives_brp_from_tq():
    bt = _sja_500k()
    fixed = fixup_bittiming(
        BitTiming(
            tq=bt.tq,
            prop_seg=bt.prop_seg,
            phase_seg1=bt.phase_seg1,
            phase_seg2=bt.phase_seg2,
        ),
        SJA1000.const,
        SJA_CLK,
    )
    assert fixed.brp == bt.brp
    assert fixed.bitrate == 500000


@pytest.mark.parametrize(
    "bt",
    [
        BitTiming(prop_seg=10, phase_seg1=10, phase_seg2=2, brp=1),
        BitTiming(prop_seg=6, phase_seg1=7, phase_seg2=0, brp=1),
        BitTiming(prop_seg=6, phase_seg1=7, phase_seg2=9, brp=1),
        BitTiming(prop_seg=6, phase_seg1=7, phase_seg2=2, sjw=5, brp=1),
        BitTiming(prop_seg=6, phase_seg1=7, phase_seg2=2, brp=65),
    ],
)
def test_fixup_out_of_range(bt):
    with pytest.raises(BitTimingError):
        fixup_bittiming(bt, SJA1000.const, SJA_CLK)


def test_format_btr_mcp251x_sets_top_bit_of_cnf2():
    parts = format_btr_mcp251x(BitTiming(prop_seg=2, phase_seg1=3, phase_seg2=3, sjw=1, brp=1)).split()
    assert len(parts) == 3
    assert int(parts[1], 16) & 0x80


def test_format_btr_at91_fields():
    bt = BitTiming(prop_seg=5, phase_seg1=6, phase_seg2=4, sjw=2, brp=3)
    br = int(format_btr_at91(bt), 16)
    assert br & 0xF == bt.phase_seg2 - 1
    assert (br >> 4) & 0xF == bt.phase_seg1 - 1
    assert (br >> 8) & 0xF == bt.prop_seg - 1
    assert (br >> 12) & 0xF == bt.sjw - 1
    assert br >> 16 == bt.brp - 1


def test_format_btr_rcar_can_fields():
    bt = BitTiming(prop_seg=5, phase_seg1=6, phase_seg2=4, sjw=2, brp=3)
    bcr = int(format_btr_rcar_can(bt), 16)
    assert bcr & 0xFF == 0
    assert (bcr >> 8) & 0x7 == bt.phase_seg2 - 1
    assert (bcr >> 16) & 0x3FF == bt.brp - 1


def test_controller_headers():
    assert SJA1000.btr_header() == "BTR0 BTR1"
    at91 = _by_name("at91")
    assert at91.btr_header().strip() == "CAN_BR"
    assert len(at91.btr_header()) == 10
    mscan = _by_name("mscan")
    assert mscan.btr_header() == ""
    assert mscan.format_btr(_sja_500k()) == ""


def test_format_bit_timing_quiet_line():
    text = format_bit_timing(SJA1000, None, SJA1000.ref_clocks[0], 500000, 0, True)
    lines = text.splitlines()
    assert len(lines) == 1
    assert lines[0].startswith(" 500000 ")
    assert lines[0].endswith(SJA1000.format_btr(_sja_500k()))


def test_format_bit_timing_header():
    text = format_bit_timing(SJA1000, None, SJA1000.ref_clocks[0], 500000, 0, False)
    lines = text.splitlines()
    assert len(lines) == 4
    assert lines[0].startswith("Bit timing parameters for sja1000 with")
    assert lines[2].endswith("BTR0 BTR1")


def test_format_bit_timing_not_possible():
    text = format_bit_timing(SJA1000, None, SJA1000.ref_clocks[0], 1, 0, True)
    assert "***bitrate not possible***" in text


def test_format_bit_timing_exceeds_range():
    ref = BitTiming(prop_seg=10, phase_seg1=10, phase_seg2=2, brp=1)
    text = format_bit_timing(SJA1000, ref, SJA1000.ref_clocks[0], 500000, 0, True)
    assert "***parameters exceed controller's range***" in text


def test_format_bit_timing_named_clock():
    mcp = _by_name("mcp251x")
    text = format_bit_timing(mcp, None, mcp.ref_clocks[0], 125000, 0, False)
    assert "(8 MHz OSC)" in text


def test_calculate_unknown_controller():
    with pytest.raises(UnknownControllerError):
        calculate("nope", None, 500000, 0, None, False)


def test_calculate_common_bitrates():
    text = calculate("sja1000", None, 0, 0, None, False)
    assert text.count("Bit timing parameters") == 1
    rows = [line for line in text.splitlines() if line and line.split()[0].isdigit()]
    assert len(rows) == len(COMMON_BITRATES)


def test_calculate_all_controllers():
    text = calculate(None, None, 500000, 0, None, False)
    for name in controller_names():
        assert f"for {name}" in text


def test_calculate_with_command_line_clock():
    text = calculate("sja1000", None, 500000, 0, RefClock(16000000, "cmd-line"), False)
    assert "(cmd-line)" in text
    assert text.count("Bit timing parameters") == 1


def test_main_list(capsys):
    assert main(["-l"]) == 0
    assert capsys.readouterr().out.splitlines() == controller_names()


def test_main_unknown_controller(capsys):
    assert main(["nope"]) == 1
    assert "unknown CAN controller 'nope'" in capsys.readouterr().out


def test_main_invalid_sample_point(capsys):
    assert main(["-s", "50", "sja1000"]) == 1
    assert "Usage:" in capsys.readouterr().out


def test_main_help(capsys):
    assert main(["-?"]) == 0
    assert "Usage:" in capsys.readouterr().out


def test_main_unknown_option(capsys):
    assert main(["--bogus"]) == 1
    assert "Usage:" in capsys.readouterr().out


def test_main_too_many_arguments(capsys):
    assert main(["sja1000", "mscan"]) == 1
    assert "Usage:" in capsys.readouterr().out


def test_main_calculation(capsys):
    assert main(["-q", "-b", "500000", "sja1000"]) == 0
    assert capsys.readouterr().out == calculate("sja1000", None, 500000, 0, None, True)


def test_main_low_level_parameters(capsys):
    argv = [
        "--prop-seg", "6", "--phase-seg1", "7", "--phase-seg2", "2",
        "--brp", "1", "-b", "500000", "-q", "sja1000",
    ]
    assert main(argv) == 0
    out = capsys.readouterr().out
    ref = BitTiming(prop_seg=6, phase_seg1=7, phase_seg2=2, brp=1)
    assert out == calculate("sja1000", ref, 500000, 0, None, True)
    assert "exceed" not in out


def test_main_tseg1_splits_segments(capsys):
    argv = ["--tseg1", "13", "--tseg2", "2", "--brp", "1", "-b", "500000", "-q", "sja1000"]
    assert main(argv) == 0
    ref = BitTiming(prop_seg=6, phase_seg1=7, phase_seg2=2, brp=1)
    assert capsys.readouterr().out == calculate("sja1000", ref, 500000, 0, None, True)