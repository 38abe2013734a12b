from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Optional, Union

import cv2
import numpy as np

from facegreet.config import MatcherConfig, PreprocessConfig
from facegreet.errors import (
    DimensionMismatch,
    EmptyStore,
    ExtractionError,
    InvalidInput,
    PersistenceError,
)
from facegreet.face import persistence
from facegreet.face.extractor import EmbeddingExtractor
from facegreet.face.matcher import Invalid, Matcher, MatchVerdict, Recognized
from facegreet.face.preprocess import Preprocessor
from facegreet.face.store import SignatureStore
from facegreet.utils.log import get_logger

logger = get_logger(__name__)

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png")

ExtractorLike = Union[EmbeddingExtractor, Callable[[np.ndarray], np.ndarray]]


class FaceRecognizer:
    """
    人脸身份引擎：统一预处理 -> 特征提取（外部模型）-> 签名库 / 最近邻匹配。

    主要功能：
    1. enroll：登记（同名可多次登记，多样本提升召回）
    2. recognize：识别，返回 Recognized / Unrecognized / Empty / Invalid
    3. save_database / load_database：两段式持久化（.names + .features）
    4. enroll_directory：按“每人一个子目录”的图库批量登记

    登记与识别必须走同一个 Preprocessor，否则签名不可比。
    """

    def __init__(
        self,
        extractor: ExtractorLike,
        matcher_config: MatcherConfig,
        preprocess_config: Optional[PreprocessConfig] = None,
        store: Optional[SignatureStore] = None,
    ):
        """
        Args:
            extractor: 特征提取器（EmbeddingExtractor 或可调用对象 image -> vector）
            matcher_config: 匹配配置（阈值必须显式给出）
            preprocess_config: 预处理配置，默认 224x224
            store: 已有签名库，默认新建空库
        """
        self.extractor = extractor
        self.preprocessor = Preprocessor(preprocess_config)
        self.store = store if store is not None else SignatureStore()

        # 提取器若定义了自己的相似度（如 SFace FR_COSINE），匹配时使用它
        similarity = getattr(extractor, "similarity", None)
        self.matcher = Matcher(self.store, matcher_config, similarity=similarity if callable(similarity) else None)

    # 运行时允许外部修改阈值（例如 CLI 参数）
    @property
    def threshold(self) -> float:
        return float(self.matcher.config.threshold)

    @threshold.setter
    def threshold(self, value: float) -> None:
        self.matcher.config.threshold = float(value)

    def __len__(self) -> int:
        return len(self.store)

    def signature(self, image: np.ndarray) -> np.ndarray:
        """预处理并提取签名。预处理失败抛 InvalidInput，提取失败抛 ExtractionError。"""
        canonical = self.preprocessor.normalize(image)
        fn = getattr(self.extractor, "extract", self.extractor)
        try:
            return np.asarray(fn(canonical), dtype=np.float32).reshape(-1)
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"extractor failed: {e}") from e

    def enroll_signature(self, name: str, signature: np.ndarray) -> int:
        record_id = self.store.enroll(name, signature)
        logger.info(f"已登记 '{name}' (record={record_id}, 共 {len(self.store)} 条)")
        return record_id

    def enroll(self, name: str, image: np.ndarray) -> Optional[int]:
        """
        登记一张人脸

        Returns:
            记录 id；失败时返回 None（原因写入日志）
        """
        try:
            return self.enroll_signature(name, self.signature(image))
        except (InvalidInput, DimensionMismatch) as e:
            logger.warning(f"登记 '{name}' 失败: {e}")
        except ExtractionError as e:
            logger.error(f"登记 '{name}' 时特征提取失败: {e}")
        return None

    def recognize_signature(self, signature, threshold: Optional[float] = None) -> MatchVerdict:
        return self.matcher.recognize(signature, threshold=threshold)

    def recognize(self, image: np.ndarray, threshold: Optional[float] = None, debug: bool = False) -> MatchVerdict:
        """
        识别一张人脸，任何失败都以 Invalid 返回，不抛异常

        Args:
            image: 人脸裁剪图
            threshold: 可选，覆盖配置阈值
            debug: 输出 top-k 相似度
        """
        try:
            sig = self.signature(image)
        except InvalidInput as e:
            logger.warning(f"识别输入无效: {e}")
            return Invalid(str(e))
        except ExtractionError as e:
            logger.error(f"识别时特征提取失败: {e}")
            return Invalid(f"extraction failed: {e}")

        verdict = self.matcher.recognize(sig, threshold=threshold)
        if isinstance(verdict, Recognized):
            logger.info(f"识别成功: '{verdict.name}' (相似度: {verdict.score:.4f})")
        else:
            logger.info(f"未识别: {verdict}")
        if debug:
            logger.info(f"recognize debug: threshold={self.threshold:.3f}, top5={self.matcher.top_k(sig, 5)}")
        return verdict

    def label(self, verdict: MatchVerdict) -> str:
        return self.matcher.label(verdict)

    def enroll_directory(self, gallery_dir) -> Dict[str, int]:
        """
        按图库目录批量登记：每个子目录名即人名，目录内每张图像登记一条记录。
        图像应为已裁剪的人脸区域。

        Returns:
            {人名: 成功登记的样本数}
        """
        gallery_dir = Path(gallery_dir)
        if not gallery_dir.is_dir():
            raise InvalidInput(f"gallery directory not found: {gallery_dir}")

        logger.info(f"开始登记图库: {gallery_dir}")
        added: Dict[str, int] = {}
        total_images = 0

        for person_dir in sorted(p for p in gallery_dir.iterdir() if p.is_dir()):
            person_name = person_dir.name
            # 不区分大小写的后缀匹配，避免漏掉 0001.JPG
            image_files = sorted(
                p for p in person_dir.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
            )
            total_images += len(image_files)

            count = 0
            for img_file in image_files:
                image = cv2.imread(str(img_file))
                if image is None:
                    logger.warning(f"无法读取图像: {img_file}")
                    continue
                if self.enroll(person_name, image) is not None:
                    count += 1

            if count:
                added[person_name] = count
                logger.info(f"  {person_name}: {count}/{len(image_files)} 张图像登记成功")
            else:
                logger.warning(f"  {person_name} 没有可登记的图像")

        logger.info(f"图库登记完成: {len(added)} 个人, {sum(added.values())}/{total_images} 张图像")
        return added

    def save_database(self, path) -> bool:
        """保存签名库；空库不保存。成功返回 True。"""
        try:
            persistence.save(self.store, path)
            return True
        except EmptyStore:
            logger.error("签名库为空，未保存")
        except (PersistenceError, OSError) as e:
            logger.error(f"保存签名库失败: {e}")
        return False

    def load_database(self, path) -> bool:
        """加载签名库；失败时保持当前内容不变。成功返回 True。"""
        try:
            persistence.load(path, self.store)
            return True
        except (PersistenceError, DimensionMismatch) as e:
            logger.error(f"加载签名库失败: {e}")
        return False

    def reset(self) -> None:
        self.store.clear()
        logger.info("签名库已清空")

    def get_gallery_info(self) -> Dict:
        """获取签名库信息"""
        summary = self.store.summary()
        return {
            "total_records": len(self.store),
            "total_persons": len(summary),
            "person_names": list(summary.keys()),
            "samples_per_person": summary,
            "dimension": self.store.dimension,
            "similarity_threshold": self.threshold,
        }
