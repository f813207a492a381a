"""
Quiz Battle 多人实时问答对战后端
"""
