"""
pinchat
~~~~~~~

PIN 房间实时群聊中继服务。
"""
