"""
InkRow 手写公式行转写 - 后端核心模块

模块结构：
- config/     运行期配置
- models/     数据模型定义
- rows/       行存储与笔画成员分配
- ocr/        切片/缓存/识别工作池/合并/后处理
- pipeline/   行级流水线编排
- events      进度事件流
- interfaces  外部协作方接口与异常分类
"""

__version__ = "0.1.0"
