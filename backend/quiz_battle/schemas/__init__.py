# 请求/数据模式
