"""
whipwhep コマンド

使い方:
    # H.264 Annex B ファイルを WHIP で配信
    whipwhep whip --url https://example.com/whip/channel --input video.h264

    # 30 秒間ループ配信
    whipwhep whip --url https://example.com/whip/channel --input video.h264 --loop --duration 30

    # WHEP で受信して映像を保存
    whipwhep whep --url https://example.com/whep/channel --duration 10 --output out.h264

    # サーバーから offer をもらう
    whipwhep whep --url https://example.com/whep/channel --mode answer
"""

import argparse
import logging
import time
from datetime import timedelta
from typing import BinaryIO, Dict, Iterator, List, Optional

from .codecs import VIDEO_CLOCK_RATE, Codec, MediaKind
from .errors import EndOfStreamError, InvalidTimestampError, PacketTimeoutError, WebRTCError
from .log import handle_error
from .media import CodecParameters, parameter_sets, split_access_units, to_annexb
from .options import WebRTCOptions, parse_duration
from .signaling import SignalingMode
from .whep import WHEPClient
from .whip import WHIPClient

logger = logging.getLogger(__name__)

# 受信統計のログ出力間隔（秒）
STATS_INTERVAL = 5.0

_VIDEO_CODECS = {"h264": Codec.H264, "h265": Codec.HEVC}


def build_options(args: argparse.Namespace) -> WebRTCOptions:
    return WebRTCOptions.from_dict(
        {
            "bearer_token": args.token,
            "connection_timeout": args.connection_timeout,
            "rw_timeout": args.rw_timeout,
            "ice_servers": args.ice_server,
        }
    )


def read_access_units(path: str) -> List[bytes]:
    with open(path, "rb") as f:
        data = f.read()
    access_units = list(split_access_units(data))
    if not access_units:
        raise ValueError(f"No H.264 access unit in {path}")
    return access_units


def h264_stream_parameters(access_units: List[bytes]) -> CodecParameters:
    """Codec parameters of an H.264 stream, with the first SPS/PPS as extradata"""
    sps: List[bytes] = []
    pps: List[bytes] = []
    for access_unit in access_units:
        psets = parameter_sets(Codec.H264, access_unit)
        sps = sps or psets.get("sps", [])
        pps = pps or psets.get("pps", [])
        if sps and pps:
            break
    if not sps:
        logger.warning("No SPS found, sprop-parameter-sets is not announced")
    return CodecParameters(kind=MediaKind.VIDEO, codec=Codec.H264, extradata=to_annexb(sps + pps))


def iter_frames(access_units: List[bytes], loop: bool) -> Iterator[bytes]:
    while True:
        yield from access_units
        if not loop:
            return


def publish(
    client: WHIPClient,
    access_units: List[bytes],
    framerate: int,
    duration: Optional[timedelta],
    loop: bool,
) -> int:
    """Send access units at ``framerate`` until the file ends or ``duration`` elapses

    Returns:
        Number of frames sent
    """
    frame_interval = 1.0 / framerate
    start_time = time.perf_counter()
    frame_number = 0

    for access_unit in iter_frames(access_units, loop):
        elapsed = time.perf_counter() - start_time
        if duration is not None and elapsed >= duration.total_seconds():
            logger.info("Duration reached")
            break

        next_time = start_time + frame_number * frame_interval
        wait = next_time - time.perf_counter()
        if wait > 0:
            time.sleep(wait)

        timestamp = frame_number * VIDEO_CLOCK_RATE // framerate
        try:
            client.send_packet(0, timestamp, access_unit)
        except InvalidTimestampError as e:
            logger.warning(f"Dropped frame #{frame_number}: {e}")
        frame_number += 1

        if frame_number % (framerate * 10) == 0:
            logger.info(f"Sent {frame_number} frames ({frame_number / framerate:.0f}s)")

    return frame_number


class TrackStats:
    def __init__(self):
        self.packets = 0
        self.bytes = 0


def subscribe(
    client: WHEPClient, duration: Optional[timedelta], output: Optional[BinaryIO]
) -> Dict[int, TrackStats]:
    """Receive packets until the stream ends or ``duration`` elapses

    Returns:
        Per-track packet and byte counters
    """
    stats: Dict[int, TrackStats] = {index: TrackStats() for index in range(len(client.streams))}
    video_index = next(
        (i for i, params in enumerate(client.streams) if params.kind is MediaKind.VIDEO), None
    )
    if output is not None and video_index is not None:
        output.write(client.streams[video_index].extradata)

    start_time = time.perf_counter()
    last_report = start_time
    while True:
        now = time.perf_counter()
        if duration is not None and now - start_time >= duration.total_seconds():
            logger.info("Duration reached")
            break
        if now - last_report >= STATS_INTERVAL:
            for index, track_stats in stats.items():
                logger.info(
                    f"Track #{index}: {track_stats.packets} packets, {track_stats.bytes} bytes"
                )
            last_report = now

        try:
            packet = client.receive_packet()
        except PacketTimeoutError:
            logger.debug("No packet received")
            continue
        except EndOfStreamError as e:
            logger.info(f"End of stream: {e}")
            break

        track_stats = stats.setdefault(packet.stream_index, TrackStats())
        track_stats.packets += 1
        track_stats.bytes += len(packet.data)
        if output is not None and packet.stream_index == video_index:
            output.write(packet.data)

    return stats


def run_whip(args: argparse.Namespace) -> int:
    access_units = read_access_units(args.input)
    logger.info(f"Loaded {len(access_units)} access units from {args.input}")

    client = WHIPClient(args.url, [h264_stream_parameters(access_units)], build_options(args))
    try:
        client.connect()
        sent = publish(client, access_units, args.framerate, args.duration, args.loop)
        logger.info(f"Sent {sent} frames")
    except KeyboardInterrupt:
        logger.info("Interrupted by user (Ctrl+C)")
    except (WebRTCError, OSError) as e:
        handle_error("running WHIP client", e)
        return 1
    finally:
        client.disconnect()
    return 0


def run_whep(args: argparse.Namespace) -> int:
    client = WHEPClient(
        args.url,
        build_options(args),
        mode=SignalingMode(args.mode),
        video_codec=_VIDEO_CODECS[args.video_codec_type],
    )
    output = open(args.output, "wb") if args.output else None
    try:
        client.connect()
        stats = subscribe(client, args.duration, output)
        for index, track_stats in stats.items():
            logger.info(f"Track #{index}: {track_stats.packets} packets, {track_stats.bytes} bytes")
    except KeyboardInterrupt:
        logger.info("Interrupted by user (Ctrl+C)")
    except (WebRTCError, OSError) as e:
        handle_error("running WHEP client", e)
        return 1
    finally:
        client.disconnect()
        if output is not None:
            output.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--url", required=True, help="WHIP / WHEP エンドポイント URL")
    common.add_argument("--token", help="Bearer トークン（認証用）")
    common.add_argument(
        "--connection-timeout",
        type=parse_duration,
        help="接続完了を待つ時間 (デフォルト: 10s)",
    )
    common.add_argument(
        "--rw-timeout",
        type=parse_duration,
        help="シグナリングとパケット受信のタイムアウト (デフォルト: 1s)",
    )
    common.add_argument(
        "--ice-server",
        action="append",
        help="STUN / TURN サーバー URL（複数指定可）",
    )
    common.add_argument("--duration", type=parse_duration, help="配信 / 受信時間")
    common.add_argument(
        "--debug",
        action="store_true",
        help="デバッグログを出力",
    )

    parser = argparse.ArgumentParser(prog="whipwhep", description="WHIP / WHEP クライアント")
    subparsers = parser.add_subparsers(dest="command", required=True)

    whip = subparsers.add_parser("whip", parents=[common], help="WHIP で配信")
    whip.add_argument("--input", required=True, help="H.264 Annex B ファイル")
    whip.add_argument(
        "--framerate",
        type=int,
        default=30,
        help="フレームレート (デフォルト: 30)",
    )
    whip.add_argument("--loop", action="store_true", help="ファイルを繰り返し配信")
    whip.set_defaults(func=run_whip)

    whep = subparsers.add_parser("whep", parents=[common], help="WHEP で受信")
    whep.add_argument(
        "--mode",
        choices=[mode.value for mode in SignalingMode],
        default=SignalingMode.OFFER.value,
        help="offer: こちらから offer を送る / answer: サーバーの offer に answer を返す",
    )
    whep.add_argument(
        "--video-codec-type",
        choices=list(_VIDEO_CODECS),
        default="h264",
        help="映像コーデック (デフォルト: h264)",
    )
    whep.add_argument("--output", help="受信した映像を書き出すファイル")
    whep.set_defaults(func=run_whep)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # ログレベル設定
    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "whip" and args.framerate <= 0:
        parser.error("--framerate must be positive")

    try:
        return args.func(args)
    except (WebRTCError, ValueError, OSError) as e:
        handle_error(f"running {args.command}", e)
        return 1
