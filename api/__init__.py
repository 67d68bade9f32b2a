"""
HTTP 與 WebSocket 層

Router 只負責把請求轉成 Manager 呼叫、把業務異常轉成 HTTP 錯誤，
不包含任何業務規則
"""
