"""
核心業務邏輯層

這個 package 包含所有品飲規則，包括：
- 狀態機：集中管理所有 session 狀態 / 階段轉換
- Manager：管理 Session、Participant 和 Score 的生命週期
- Event Log 與即時廣播
- Locks：並發控制工具
- Security：參與者與使用者 token
"""
