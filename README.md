# canutils

Command-line tools and a small library for working with CAN buses through
Linux SocketCAN:

- **can-calc-bit-timing** – compute CAN bit timing register values for a
  set of well-known CAN controllers, or decode given low-level timing
  parameters.
- **canbusload** – watch one or more CAN interfaces and report, once a second,
  how much of each bus's bandwidth is in use.
- **canfdtest** – a full-duplex test between a device under test and a host:
  one side echoes every frame back with the ID and data incremented, the
  other side generates frames and checks the echoes.
- **bcmserver** – a TCP server that accepts plain-text commands and turns them
  into SocketCAN broadcast manager jobs (cyclic send, receive filters).

The bit timing calculator and the frame length calculation are pure Python
and work anywhere. The bus load monitor, the full-duplex tester and the BCM
server need Linux with SocketCAN support. No third-party libraries are
required.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Bit timing

List the supported controllers (sja1000, mscan, at91, flexcan, mcp251x,
mcp251xfd, ti_hecc, rcar_can):

```
can-calc-bit-timing -l
```

Show the timing table for all common bitrates (1 Mbit/s down to 10 kbit/s)
of one controller at each of its reference clocks; without a controller name
all controllers are shown:

```
can-calc-bit-timing sja1000
```

| Option | Meaning |
| --- | --- |
| `-b <bitrate>` | only calculate this bitrate (bits per second) |
| `-s <samp_pt>` | sample point in tenths of a percent (100–999), 0 for CiA recommended values |
| `-c <clock>` | use this CAN system clock in Hz instead of the built-in reference clocks |
| `-q` | do not print the header lines |
| `-l` | list the controller names |
| `--prop-seg`, `--phase-seg1`, `--phase-seg2`, `--sjw`, `--brp`, `--tq`, `--tseg1`, `--tseg2` | decode the given low-level parameters instead of calculating them |

Example – decode a setting at 500 kbit/s on an 8 MHz clock:

```
can-calc-bit-timing -c 8000000 -b 500000 --tseg1 13 --tseg2 2 --brp 1 mcp251x
```

Rows that cannot be realised show `***bitrate not possible***` or
`***parameters exceed controller's range***`.

From Python, `canutils.bittiming` offers:

```python
from canutils.bittiming import calculate, cia_sample_point, controller_names

print(controller_names())            # names accepted by calculate() and the CLI
print(cia_sample_point(500000))      # 875, i.e. 87.5 %
print(calculate("sja1000", bitrate_nominal=500000))
```

`calc_bittiming(bt, btc, clock_freq)` and `fixup_bittiming(bt, btc, clock_freq)`
take a `BitTiming`, a controller's `BitTimingConst` and a clock frequency and
return a new `BitTiming`; they raise `BitTimingError` when a bitrate cannot be
reached or parameters are out of range. `calculate` raises
`UnknownControllerError` for an unknown controller name. The controller table
is `CONTROLLERS`; each `Controller` renders its register values with
`format_btr` and their column title with `btr_header`.

## Bus load

```
canbusload can0@500000 can1@125000 -r -t -b -c
```

Each interface is given as `<ifname>@<bitrate>` (up to 16 of them, bitrate at
most 1000000). Every second one line per interface is printed with the number
of received frames, the total bits used on the wire, the payload bits and the
load in percent.

| Option | Meaning |
| --- | --- |
| `-t` | show the current time on the first line |
| `-c` | colourise lines |
| `-b` | show a bar graph in 5 % steps |
| `-r` | redraw the terminal, similar to `top` |
| `-i` | ignore bit stuffing in the calculation |
| `-e` | exact calculation of stuffed bits from frame content and CRC |

By default a worst-case bit stuffing estimate is used, so the reported load
may exceed 100 %. Stop it with Ctrl-C.

The per-frame bit count is
`canutils.canframelen.can_frame_length(frame, mode, mtu)`, with the mode
taken from `CflMode` and frames given as `CanFrame` (which converts to and
from the SocketCAN byte layout with `to_bytes` and `from_bytes`). The
counters and the output are available as `BusStats`, `parse_interface_spec`
and `format_stats` in `canutils.canbusload`.

## Full-duplex test

On the device under test:

```
canfdtest -v can0
```

On the host:

```
canfdtest -g -v can2
```

| Option | Meaning |
| --- | --- |
| `-v` / `-vv` | low / high verbosity |
| `-g` | generate and check frames (host side) |
| `-l <count>` | stop after this many test loops |
| `-f <count>` | number of frames in flight (default 50) |

Any mismatch between the sent and the echoed frames stops the generating
side and prints the expected and received frames. The frame helpers
`format_frame`, `compare_frame`, `check_frame` and `inc_frame` and the loops
`echo_dut` and `echo_gen` are in `canutils.canfdtest`; socket failures raise
`EchoError`.

## BCM server

```
bcmserver
```

The server listens on TCP port 28600 and serves each client in its own
thread with its own broadcast manager socket; the client's jobs end when the
connection closes. Commands have the form

```
< interface command ival_s ival_us can_id can_dlc [data]* >
```

where `can_id` and the data bytes are hexadecimal and the rest decimal.

| Command | Action |
| --- | --- |
| `A` | add a cyclic transmission |
| `U` | update the data of a cyclic transmission |
| `D` | delete a cyclic transmission |
| `S` | send a single frame |
| `R` | receive a CAN ID and report content changes in the given mask |
| `F` | receive a CAN ID without content filtering |
| `X` | delete a receive filter |

Examples:

```
< vcan1 A 1 0 123 8 11 22 33 44 55 66 77 88 >
< vcan1 R 0 0 123 1 FF >
< vcan1 X 0 0 123 0 >
```

A malformed or unknown command closes the connection. Received frames are
sent back to the client as `< interface can_id can_dlc [data]* >`, each
message terminated by a NUL byte. The parsing is available as
`parse_command`, `CommandAssembler` and `BcmCommand` in `canutils.bcmserver`.

## What this package does not do

- It does not dump, log or replay CAN traffic, generate test traffic beyond
  the full-duplex test, or convert log files.
- `can_frame_length` counts classic CAN frames only; for CAN FD frames it
  returns 0.