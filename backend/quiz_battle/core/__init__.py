# 核心配置与基础设施
