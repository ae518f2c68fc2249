"""
参考光栅化器 - 用 Pillow 把笔画渲染为白底黑线的灰度图

真实系统中光栅化由绘图端完成；此实现用于基准工具与测试。
"""

from __future__ import annotations

import numpy as np
from PIL import Image, ImageDraw

from ..interfaces import IRasterizer
from ..models import BBox, ElementGeometry


class PillowRasterizer(IRasterizer):
    """Pillow 光栅化器"""

    def __init__(self, stroke_width: int = 3):
        self.stroke_width = stroke_width

    def rasterize(self, region: BBox, elements: list[ElementGeometry], size: int) -> np.ndarray:
        img = Image.new("L", (size, size), 255)
        draw = ImageDraw.Draw(img)
        sx = size / region.width if region.width > 0 else 1.0
        sy = size / region.height if region.height > 0 else 1.0

        for el in elements:
            if el.points:
                pts = [
                    ((el.x + px - region.xmin) * sx, (el.y + py - region.ymin) * sy)
                    for px, py in el.points
                ]
                if len(pts) == 1:
                    draw.point(pts[0], fill=0)
                else:
                    draw.line(pts, fill=0, width=self.stroke_width, joint="curve")
            else:
                x0 = (el.x - region.xmin) * sx
                y0 = (el.y - region.ymin) * sy
                x1 = (el.x + el.width - region.xmin) * sx
                y1 = (el.y + el.height - region.ymin) * sy
                draw.rectangle([x0, y0, x1, y1], outline=0, width=self.stroke_width)

        return np.asarray(img, dtype=np.uint8)
