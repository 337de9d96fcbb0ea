"""CAN bit timing calculation and decoding for a set of CAN controllers."""

from __future__ import annotations

import getopt
import re
import sys
from dataclasses import dataclass, field
from typing import Callable, NamedTuple

_U32 = 0xFFFFFFFF
UINT_MAX = _U32

CAN_CALC_MAX_ERROR = 50  # in one-tenth of a percent
CAN_CALC_SYNC_SEG = 1

COMMON_BITRATES = (
    1000000,
    800000,
    500000,
    250000,
    125000,
    100000,
    50000,
    20000,
    10000,
)

PROGRAM = "can-calc-bit-timing"


def _u32(value: int) -> int:
    return value & _U32


def _s32(value: int) -> int:
    value = _u32(value)
    return value - (1 << 32) if value & 0x80000000 else value


def _abs32(value: int) -> int:
    """Absolute value of a 32-bit unsigned quantity read as signed."""
    return _u32(abs(_s32(value)))


class BitTimingError(ValueError):
    """The requested bit timing cannot be realised by the controller."""


class UnknownControllerError(LookupError):
    """No controller with the given name is known."""

    def __init__(self, name: str | None) -> None:
        self.name = name
        super().__init__(f"unknown CAN controller '{name}'")


@dataclass(frozen=True)
class BitTimingConst:
    """Hardware limits of a controller's bit timing registers."""

    name: str
    tseg1_min: int
    tseg1_max: int
    tseg2_min: int
    tseg2_max: int
    sjw_max: int
    brp_min: int
    brp_max: int
    brp_inc: int


@dataclass(frozen=True)
class RefClock:
    """A CAN system clock frequency in Hz, optionally labelled."""

    clk: int
    name: str | None = None


@dataclass
class BitTiming:
    """Bit timing parameters; segments are given in time quanta."""

    bitrate: int = 0
    sample_point: int = 0
    tq: int = 0
    prop_seg: int = 0
    phase_seg1: int = 0
    phase_seg2: int = 0
    sjw: int = 0
    brp: int = 0


class SamplePoint(NamedTuple):
    """Best sample point for a tseg; tseg1/tseg2 are None if none fits."""

    sample_point: int
    tseg1: int | None
    tseg2: int | None
    error: int


@dataclass(frozen=True)
class Controller:
    """A CAN controller: its limits, typical clocks and register layout."""

    const: BitTimingConst
    ref_clocks: tuple[RefClock, ...]
    btr_title: str | None = None
    btr_formatter: Callable[[BitTiming], str] | None = field(default=None, compare=False)

    @property
    def name(self) -> str:
        return self.const.name

    def btr_header(self) -> str:
        """Column header of the register values, empty if there are none."""
        if self.btr_formatter is None:
            return ""
        return self.btr_title or ""

    def format_btr(self, bt: BitTiming) -> str:
        """Register values for the timing, empty if the layout is unknown."""
        if self.btr_formatter is None:
            return ""
        return self.btr_formatter(bt)


def format_btr_sja1000(bt: BitTiming) -> str:
    btr0 = (((bt.brp - 1) & 0x3F) | (((bt.sjw - 1) & 0x3) << 6)) & 0xFF
    btr1 = (((bt.prop_seg + bt.phase_seg1 - 1) & 0xF) | (((bt.phase_seg2 - 1) & 0x7) << 4)) & 0xFF
    return f"0x{btr0:02x} 0x{btr1:02x}"


def format_btr_at91(bt: BitTiming) -> str:
    br = _u32(
        (bt.phase_seg2 - 1)
        | ((bt.phase_seg1 - 1) << 4)
        | ((bt.prop_seg - 1) << 8)
        | ((bt.sjw - 1) << 12)
        | ((bt.brp - 1) << 16)
    )
    return f"0x{br:08x}"


def format_btr_flexcan(bt: BitTiming) -> str:
    ctrl = _u32(
        ((bt.brp - 1) << 24)
        | ((bt.sjw - 1) << 22)
        | ((bt.phase_seg1 - 1) << 19)
        | ((bt.phase_seg2 - 1) << 16)
        | (bt.prop_seg - 1)
    )
    return f"0x{ctrl:08x}"


def format_btr_mcp251x(bt: BitTiming) -> str:
    cnf1 = (((bt.sjw - 1) << 6) | (bt.brp - 1)) & 0xFF
    cnf2 = (0x80 | ((bt.phase_seg1 - 1) << 3) | (bt.prop_seg - 1)) & 0xFF
    cnf3 = (bt.phase_seg2 - 1) & 0xFF
    return f"0x{cnf1:02x} 0x{cnf2:02x} 0x{cnf3:02x}"


def format_btr_mcp251xfd(bt: BitTiming) -> str:
    nbtcfg = _u32(
        ((bt.brp - 1) << 24)
        | ((bt.prop_seg + bt.phase_seg1 - 1) << 16)
        | ((bt.phase_seg2 - 1) << 8)
        | (bt.sjw - 1)
    )
    return f"0x{nbtcfg:08x}"


def format_btr_ti_hecc(bt: BitTiming) -> str:
    can_btc = (bt.phase_seg2 - 1) & 0x7
    can_btc |= ((bt.phase_seg1 + bt.prop_seg - 1) & 0xF) << 3
    can_btc |= ((bt.sjw - 1) & 0x3) << 8
    can_btc |= ((bt.brp - 1) & 0xFF) << 16
    return f"0x{_u32(can_btc):08x}"


def format_btr_rcar_can(bt: BitTiming) -> str:
    bcr = (
        (((bt.phase_seg1 + bt.prop_seg - 1) & 0x0F) << 20)
        | (((bt.brp - 1) & 0x3FF) << 8)
        | (((bt.sjw - 1) & 0x3) << 4)
        | ((bt.phase_seg2 - 1) & 0x07)
    )
    return f"0x{_u32(bcr << 8):08x}"


CONTROLLERS: tuple[Controller, ...] = (
    Controller(
        BitTimingConst("sja1000", 1, 16, 1, 8, 4, 1, 64, 1),
        (RefClock(8000000),),
        "BTR0 BTR1",
        format_btr_sja1000,
    ),
    Controller(
        BitTimingConst("mscan", 4, 16, 2, 8, 4, 1, 64, 1),
        (
            RefClock(32000000),
            RefClock(33000000),
            RefClock(33300000),
            RefClock(33333333),
            RefClock(66660000, "mpc5121"),
            RefClock(66666666, "mpc5121"),
        ),
    ),
    Controller(
        BitTimingConst("at91", 4, 16, 2, 8, 4, 2, 128, 1),
        (RefClock(99532800, "ronetix PM9263"), RefClock(100000000)),
        f"{'CAN_BR':>10}",
        format_btr_at91,
    ),
    Controller(
        BitTimingConst("flexcan", 4, 16, 2, 8, 4, 1, 256, 1),
        (
            RefClock(24000000, "mx28"),
            RefClock(30000000, "mx6"),
            RefClock(49875000),
            RefClock(66000000),
            RefClock(66500000),
            RefClock(66666666),
            RefClock(83368421, "vybrid"),
        ),
        f"{'CAN_CTRL':>10}",
        format_btr_flexcan,
    ),
    Controller(
        BitTimingConst("mcp251x", 3, 16, 2, 8, 4, 1, 64, 1),
        # the mcp251x runs on half of the external oscillator clock
        (
            RefClock(8000000 // 2, "8 MHz OSC"),
            RefClock(16000000 // 2, "16 MHz OSC"),
            RefClock(20000000 // 2, "20 MHz OSC"),
        ),
        "CNF1 CNF2 CNF3",
        format_btr_mcp251x,
    ),
    Controller(
        BitTimingConst("mcp251xfd", 2, 256, 1, 128, 128, 1, 256, 1),
        (RefClock(20000000), RefClock(40000000)),
        "NBTCFG",
        format_btr_mcp251xfd,
    ),
    Controller(
        BitTimingConst("ti_hecc", 1, 16, 1, 8, 4, 1, 256, 1),
        (RefClock(13000000),),
        f"{'CANBTC':>10}",
        format_btr_ti_hecc,
    ),
    Controller(
        BitTimingConst("rcar_can", 4, 16, 2, 8, 4, 1, 1024, 1),
        (RefClock(65000000),),
        f"{'CiBCR':>10}",
        format_btr_rcar_can,
    ),
)


def cia_sample_point(bitrate: int) -> int:
    """CiA recommended sample point in one-tenth of a percent."""
    if bitrate > 800000:
        return 750
    if bitrate > 500000:
        return 800
    return 875


def update_sample_point(btc: BitTimingConst, spt_nominal: int, tseg: int) -> SamplePoint:
    """Split tseg into tseg1/tseg2 to get closest to, but not above, spt_nominal."""
    best_error = UINT_MAX
    best_spt = 0
    best_tseg1: int | None = None
    best_tseg2: int | None = None
    total = _u32(tseg + CAN_CALC_SYNC_SEG)

    for i in (0, 1):
        tseg2 = _u32(total - _u32(spt_nominal * total) // 1000 - i)
        tseg2 = min(max(tseg2, btc.tseg2_min), btc.tseg2_max)
        tseg1 = _u32(tseg - tseg2)
        if tseg1 > btc.tseg1_max:
            tseg1 = btc.tseg1_max
            tseg2 = _u32(tseg - tseg1)

        spt = _u32(1000 * _u32(total - tseg2)) // total
        error = _abs32(spt_nominal - spt)

        if spt <= spt_nominal and error < best_error:
            best_spt = spt
            best_error = error
            best_tseg1 = tseg1
            best_tseg2 = tseg2

    return SamplePoint(best_spt, best_tseg1, best_tseg2, best_error)


def calc_bittiming(bt: BitTiming, btc: BitTimingConst, clock_freq: int) -> BitTiming:
    """Find the timing closest to bt.bitrate and bt.sample_point (0 = CiA)."""
    bitrate = _u32(bt.bitrate)
    if not bitrate:
        raise BitTimingError("bitrate must not be zero")
    if not clock_freq:
        raise BitTimingError("clock frequency must not be zero")

    spt_nominal = bt.sample_point or cia_sample_point(bitrate)

    best_rate_error = UINT_MAX
    best_spt_error = UINT_MAX
    best_tseg = 0
    best_brp = 0
    tseg1 = tseg2 = 0

    # tseg even = round down, odd = round up
    top = (btc.tseg1_max + btc.tseg2_max) * 2 + 1
    bottom = (btc.tseg1_min + btc.tseg2_min) * 2
    for tseg in range(top, bottom - 1, -1):
        tsegall = CAN_CALC_SYNC_SEG + tseg // 2

        divisor = _u32(tsegall * bitrate)
        if not divisor:
            continue
        brp = _u32(clock_freq // divisor + tseg % 2)
        brp = (brp // btc.brp_inc) * btc.brp_inc
        if brp < btc.brp_min or brp > btc.brp_max:
            continue

        rate = clock_freq // _u32(brp * tsegall)
        rate_error = _abs32(bitrate - rate)

        if rate_error > best_rate_error:
            continue
        if rate_error < best_rate_error:
            best_spt_error = UINT_MAX

        spt = update_sample_point(btc, spt_nominal, tseg // 2)
        if spt.tseg1 is not None:
            tseg1, tseg2 = spt.tseg1, spt.tseg2
        if spt.error > best_spt_error:
            continue

        best_spt_error = spt.error
        best_rate_error = rate_error
        best_tseg = tseg // 2
        best_brp = brp

        if rate_error == 0 and spt.error == 0:
            break

    if best_rate_error:
        rate_error = _u32(best_rate_error * 1000) // bitrate
        if rate_error > CAN_CALC_MAX_ERROR:
            raise BitTimingError(
                f"bitrate error {rate_error // 10}.{rate_error % 10}% too high"
            )

    if not best_brp:
        raise BitTimingError("no usable bit-rate prescaler")

    spt = update_sample_point(btc, spt_nominal, best_tseg)
    if spt.tseg1 is not None:
        tseg1, tseg2 = spt.tseg1, spt.tseg2

    prop_seg = tseg1 // 2

    sjw = bt.sjw
    if not sjw or not btc.sjw_max:
        sjw = 1
    else:
        sjw = min(sjw, btc.sjw_max)
        if tseg2 < sjw:
            sjw = tseg2

    return BitTiming(
        bitrate=clock_freq // _u32(best_brp * _u32(CAN_CALC_SYNC_SEG + tseg1 + tseg2)),
        sample_point=spt.sample_point,
        tq=_u32(best_brp * 1000 * 1000 * 1000 // clock_freq),
        prop_seg=prop_seg,
        phase_seg1=tseg1 - prop_seg,
        phase_seg2=tseg2,
        sjw=sjw,
        brp=best_brp,
    )


def fixup_bittiming(bt: BitTiming, btc: BitTimingConst, clock_freq: int) -> BitTiming:
    """Check low level timing parameters and derive bitrate, tq and sample point."""
    if not clock_freq:
        raise BitTimingError("clock frequency must not be zero")

    tseg1 = bt.prop_seg + bt.phase_seg1
    sjw = bt.sjw or 1
    if (
        sjw > btc.sjw_max
        or tseg1 < btc.tseg1_min
        or tseg1 > btc.tseg1_max
        or bt.phase_seg2 < btc.tseg2_min
        or bt.phase_seg2 > btc.tseg2_max
    ):
        raise BitTimingError("timing segments out of range")

    brp = bt.brp
    if not brp:
        brp64 = clock_freq * bt.tq
        if btc.brp_inc > 1:
            brp64 //= btc.brp_inc
        brp64 += 500000000 - 1
        brp64 //= 1000000000  # the practicable BRP
        if btc.brp_inc > 1:
            brp64 *= btc.brp_inc
        brp = _u32(brp64)

    # the prescaler is scaled with a 32-bit product
    tq = _u32(brp * 1000 * 1000 * 1000) // clock_freq

    if brp < btc.brp_min or brp > btc.brp_max:
        raise BitTimingError(f"bit-rate prescaler {brp} out of range")

    alltseg = CAN_CALC_SYNC_SEG + bt.prop_seg + bt.phase_seg1 + bt.phase_seg2
    return BitTiming(
        bitrate=clock_freq // _u32(brp * alltseg),
        sample_point=((CAN_CALC_SYNC_SEG + tseg1) * 1000) // alltseg,
        tq=_u32(tq),
        prop_seg=bt.prop_seg,
        phase_seg1=bt.phase_seg1,
        phase_seg2=bt.phase_seg2,
        sjw=sjw,
        brp=brp,
    )


def _error_percent(error: int, nominal: int) -> str:
    value = 100.0 * error / nominal
    if value > 99.9:
        return "≥100% "
    return f"{value:4.1f}% "


def format_bit_timing(
    controller: Controller,
    ref_bt: BitTiming | None,
    ref_clk: RefClock,
    bitrate_nominal: int,
    spt_nominal: int = 0,
    quiet: bool = False,
) -> str:
    """Render the timing table rows for one controller, clock and bitrate."""
    parts = []
    if not quiet:
        label = f" ({ref_clk.name})" if ref_clk.name else ""
        parts.append(
            f"Bit timing parameters for {controller.name}{label} "
            f"with {ref_clk.clk / 1000000.0:.6f} MHz ref clock\n"
            "nominal                                 real Bitrt   nom  real SampP\n"
            "Bitrate TQ[ns] PrS PhS1 PhS2 SJW BRP Bitrate Error SampP SampP Error "
            f"{controller.btr_header()}\n"
        )

    try:
        if ref_bt is not None:
            bt = fixup_bittiming(ref_bt, controller.const, ref_clk.clk)
        else:
            bt = calc_bittiming(
                BitTiming(bitrate=bitrate_nominal, sample_point=spt_nominal),
                controller.const,
                ref_clk.clk,
            )
    except BitTimingError:
        reason = (
            "parameters exceed controller's range"
            if ref_bt is not None
            else "bitrate not possible"
        )
        parts.append(f"{_s32(bitrate_nominal):7d} ***{reason}***\n")
        return "".join(parts)

    if not spt_nominal:
        spt_nominal = cia_sample_point(bitrate_nominal)

    rate_error = _abs32(bitrate_nominal - bt.bitrate)
    spt_error = _abs32(spt_nominal - bt.sample_point)

    parts.append(
        f"{_s32(bitrate_nominal):7d} "
        f"{_s32(bt.tq):6d} {bt.prop_seg:3d} {bt.phase_seg1:4d} {bt.phase_seg2:4d} "
        f"{bt.sjw:3d} {bt.brp:3d} "
        f"{_s32(bt.bitrate):7d} "
    )
    parts.append(_error_percent(rate_error, bitrate_nominal))
    parts.append(f"{spt_nominal / 10.0:4.1f}% {bt.sample_point / 10.0:4.1f}% ")
    parts.append(_error_percent(spt_error, spt_nominal))
    parts.append(controller.format_btr(bt))
    parts.append("\n")
    return "".join(parts)


def controller_names() -> list[str]:
    """Names of all known controllers, in table order."""
    return [controller.name for controller in CONTROLLERS]


def calculate(
    name: str | None = None,
    ref_bt: BitTiming | None = None,
    bitrate_nominal: int = 0,
    spt_nominal: int = 0,
    ref_clk: RefClock | None = None,
    quiet: bool = False,
) -> str:
    """Render timing tables for one controller (or all when name is None).

    Without a nominal bitrate the common bitrates are used.
    """
    selected = [c for c in CONTROLLERS if name is None or c.name == name]
    if not selected:
        raise UnknownControllerError(name)

    parts = []
    for controller in selected:
        clocks = (ref_clk,) if ref_clk is not None else controller.ref_clocks
        for clock in clocks:
            if not clock.clk:
                break
            if bitrate_nominal:
                parts.append(
                    format_bit_timing(
                        controller, ref_bt, clock, bitrate_nominal, spt_nominal, quiet
                    )
                )
            else:
                for k, bitrate in enumerate(COMMON_BITRATES):
                    parts.append(
                        format_bit_timing(
                            controller, ref_bt, clock, bitrate, spt_nominal, bool(k)
                        )
                    )
            parts.append("\n")
    return "".join(parts)


def _usage(cmd: str) -> str:
    return (
        f"{cmd} - calculate CAN bit timing parameters.\n"
        f"Usage: {cmd} [options] [<CAN-contoller-name>]\n"
        "Options:\n"
        "\t-q             don't print header line\n"
        "\t-l             list all support CAN controller names\n"
        "\t-b <bitrate>   bit-rate in bits/sec\n"
        "\t-s <samp_pt>   sample-point in one-tenth of a percent\n"
        "\t               or 0 for CIA recommended sample points\n"
        "\t-c <clock>     real CAN system clock in Hz\n"
        "\n"
        "Or supply low level bit timing parameters to decode them:\n"
        "\n"
        "\t--prop-seg     Propagation segment in TQs\n"
        "\t--phase-seg1   Phase buffer segment 1 in TQs\n"
        "\t--phase-seg2   Phase buffer segment 2 in TQs\n"
        "\t--sjw          Synchronisation jump width in TQs\n"
        "\t--brp          Bit-rate prescaler\n"
        "\t--tseg1        Time segment 1 = prop-seg + phase-seg1\n"
        "\t--tseg2        Time segment 2 = phase_seg2\n"
    )


_NUMBER = re.compile(r"\s*([+-]?)(\d+)")


def _parse_u32(text: str) -> int:
    """Leading decimal number of text as a 32-bit unsigned value (0 if none)."""
    match = _NUMBER.match(text)
    if not match:
        return 0
    value = int(match.group(2))
    if match.group(1) == "-":
        value = -value
    return _u32(value)


_LONG_OPTIONS = [
    "tq=",
    "prop-seg=",
    "phase-seg1=",
    "phase-seg2=",
    "sjw=",
    "brp=",
    "tseg1=",
    "tseg2=",
]


def main(argv: list[str] | None = None) -> int:
    """Command line entry point; returns the exit status."""
    args = sys.argv[1:] if argv is None else list(argv)
    out = sys.stdout

    try:
        opts, rest = getopt.gnu_getopt(args, "b:c:lqs:?", _LONG_OPTIONS)
    except getopt.GetoptError as exc:
        print(f"{PROGRAM}: {exc}", file=sys.stderr)
        out.write(_usage(PROGRAM))
        return 1

    bitrate_nominal = 0
    spt_nominal = 0
    clock = 0
    bt = BitTiming()
    quiet = False
    list_only = False

    for opt, value in opts:
        if opt == "-b":
            bitrate_nominal = _parse_u32(value)
        elif opt == "-c":
            clock = _parse_u32(value)
        elif opt == "-l":
            list_only = True
        elif opt == "-q":
            quiet = True
        elif opt == "-s":
            spt_nominal = _parse_u32(value)
        elif opt == "-?":
            out.write(_usage(PROGRAM))
            return 0
        elif opt == "--tq":
            bt.tq = _parse_u32(value)
        elif opt == "--prop-seg":
            bt.prop_seg = _parse_u32(value)
        elif opt == "--phase-seg1":
            bt.phase_seg1 = _parse_u32(value)
        elif opt in ("--phase-seg2", "--tseg2"):
            bt.phase_seg2 = _parse_u32(value)
        elif opt == "--sjw":
            bt.sjw = _parse_u32(value)
        elif opt == "--brp":
            bt.brp = _parse_u32(value)
        elif opt == "--tseg1":
            tseg1 = _parse_u32(value)
            bt.prop_seg = tseg1 // 2
            bt.phase_seg1 = tseg1 - bt.prop_seg

    if len(rest) > 1:
        out.write(_usage(PROGRAM))
        return 1
    name = rest[0] if rest else None

    if list_only:
        out.write("".join(f"{n}\n" for n in controller_names()))
        return 0

    if spt_nominal and (spt_nominal >= 1000 or spt_nominal < 100):
        out.write(_usage(PROGRAM))
        return 1

    try:
        result = calculate(
            name,
            bt if bt.prop_seg else None,
            bitrate_nominal,
            spt_nominal,
            RefClock(clock, "cmd-line") if clock else None,
            quiet,
        )
    except UnknownControllerError:
        out.write(f"error: unknown CAN controller '{name}', try one of these:\n\n")
        out.write("".join(f"{n}\n" for n in controller_names()))
        return 1

    out.write(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())