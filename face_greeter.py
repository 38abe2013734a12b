"""命令行入口：登记 / 识别 / 查看签名库。

输入图像均应为已裁剪的人脸区域（人脸检测不在本工具范围内）。
"""

from __future__ import annotations

import argparse
import sys

from typing import List, Optional

import cv2

from facegreet.config import AppConfig, config_from_dict, load_config
from facegreet.errors import FaceGreetError, InvalidInput
from facegreet.face import persistence
from facegreet.face.extractor import create_extractor
from facegreet.face.matcher import Recognized
from facegreet.face.recognizer import FaceRecognizer
from facegreet.notify.greeter import Greeter
from facegreet.notify.sinks import LogSink, SpeechSink
from facegreet.notify.throttle import CooldownThrottle
from facegreet.utils.log import get_logger, set_level

logger = get_logger(__name__)

# Enrollment never compares signatures; any value satisfies the config there.
_ENROLL_ONLY_THRESHOLD = 1.0


def _build_config(args, require_threshold: bool) -> AppConfig:
    threshold = args.threshold
    if args.config:
        try:
            cfg = load_config(args.config, threshold=threshold)
        except InvalidInput:
            if require_threshold or threshold is not None:
                raise
            cfg = load_config(args.config, threshold=_ENROLL_ONLY_THRESHOLD)
    else:
        if threshold is None:
            if require_threshold:
                raise InvalidInput("--threshold is required (or set matcher.threshold in --config)")
            threshold = _ENROLL_ONLY_THRESHOLD
        cfg = config_from_dict({}, threshold=threshold)

    if args.model:
        cfg.model_path = args.model
    if args.extractor:
        cfg.extractor = args.extractor
    if args.db:
        cfg.database = args.db
    if not cfg.database:
        raise InvalidInput("--db is required (or set database in --config)")
    return cfg


def _build_recognizer(cfg: AppConfig, device: str) -> FaceRecognizer:
    extractor = create_extractor(cfg.extractor, cfg.model_path, device=device)
    return FaceRecognizer(extractor, cfg.matcher, preprocess_config=cfg.preprocess)


def _load_existing(recognizer: FaceRecognizer, database: str) -> bool:
    names_fp, features_fp = persistence.artifact_paths(database)
    if not (names_fp.exists() or features_fp.exists()):
        return True
    return recognizer.load_database(database)


def _cmd_enroll(args) -> int:
    cfg = _build_config(args, require_threshold=False)
    recognizer = _build_recognizer(cfg, args.device)
    if not _load_existing(recognizer, cfg.database):
        return 1

    added = 0
    for img_path in args.images:
        image = cv2.imread(str(img_path))
        if image is None:
            logger.warning(f"无法读取图像: {img_path}")
            continue
        if recognizer.enroll(args.name, image) is not None:
            added += 1

    logger.info(f"'{args.name}': {added}/{len(args.images)} 张图像登记成功")
    if added == 0:
        return 1
    return 0 if recognizer.save_database(cfg.database) else 1


def _cmd_enroll_dir(args) -> int:
    cfg = _build_config(args, require_threshold=False)
    recognizer = _build_recognizer(cfg, args.device)
    if not _load_existing(recognizer, cfg.database):
        return 1
    added = recognizer.enroll_directory(args.gallery)
    if not added:
        return 1
    return 0 if recognizer.save_database(cfg.database) else 1


def _cmd_recognize(args) -> int:
    cfg = _build_config(args, require_threshold=True)
    recognizer = _build_recognizer(cfg, args.device)
    if not recognizer.load_database(cfg.database):
        return 1

    greeter = None
    if args.greet:
        sink = SpeechSink(cfg.speech) if args.speech else LogSink()
        greeter = Greeter(
            CooldownThrottle(cfg.throttle),
            sink,
            cfg.greeter,
            sentinels=(cfg.matcher.unknown_label, cfg.matcher.error_label),
        )

    recognized = 0
    for img_path in args.images:
        image = cv2.imread(str(img_path))
        if image is None:
            logger.warning(f"无法读取图像: {img_path}")
            continue
        verdict = recognizer.recognize(image, debug=args.debug)
        label = recognizer.label(verdict)
        if isinstance(verdict, Recognized):
            recognized += 1
            logger.info(f"{img_path}: {label} (相似度: {verdict.score:.4f}) ✅")
        else:
            logger.info(f"{img_path}: {label} ({verdict})")
        if greeter is not None:
            greeter.greet_verdict(verdict)

    return 0 if recognized else 2


def _cmd_info(args) -> int:
    db = args.db
    if not db and args.config:
        db = load_config(args.config, threshold=_ENROLL_ONLY_THRESHOLD).database
    if not db:
        raise InvalidInput("--db is required (or set database in --config)")
    store = persistence.load(db)
    logger.info(f"=== 签名库: {db} ===")
    logger.info(f"  记录数: {len(store)}, 维度: {store.dimension}")
    for name, count in store.summary().items():
        logger.info(f"  {name}: {count} 个样本")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="人脸签名登记与识别（带问候冷却）")
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", help="签名库基础路径（生成 <db>.names 与 <db>.features）", default=None)
    common.add_argument("--config", "-c", help="JSON 配置文件", default=None)
    common.add_argument("--model", "-m", help="特征模型路径（ONNX）", default=None)
    common.add_argument("--extractor", choices=["sface", "insightface"], default=None, help="特征提取器类型")
    common.add_argument(
        "--device",
        type=str,
        default="auto",
        choices=["auto", "cpu", "gpu"],
        help="计算设备：auto/cpu/gpu（默认 auto：有 CUDA 就用 GPU）",
    )
    common.add_argument("--threshold", "-t", type=float, default=None, help="识别阈值（严格大于才算识别）")
    common.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="日志级别（默认 INFO）"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("enroll", parents=[common], help="登记一个人的一张或多张人脸图像")
    p.add_argument("--name", "-n", required=True, help="人名")
    p.add_argument("images", nargs="+", help="人脸图像路径")
    p.set_defaults(func=_cmd_enroll)

    p = sub.add_parser("enroll-dir", parents=[common], help="按图库目录登记（每人一个子目录）")
    p.add_argument("gallery", help="图库目录")
    p.set_defaults(func=_cmd_enroll_dir)

    p = sub.add_parser("recognize", parents=[common], help="识别人脸图像")
    p.add_argument("images", nargs="+", help="人脸图像路径")
    p.add_argument("--greet", action="store_true", help="识别成功时发出问候（带冷却）")
    p.add_argument("--speech", action="store_true", help="使用语音问候（gTTS），默认仅写日志")
    p.add_argument("--debug", action="store_true", help="输出 top-k 相似度用于调试")
    p.set_defaults(func=_cmd_recognize)

    p = sub.add_parser("info", parents=[common], help="查看签名库内容")
    p.set_defaults(func=_cmd_info)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    set_level(args.log_level)
    try:
        return int(args.func(args))
    except FaceGreetError as e:
        logger.error(f"{args.command} 失败: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
