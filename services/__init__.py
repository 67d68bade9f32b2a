"""
服務層

這個 package 包含純計算邏輯，不負責狀態轉換：
- naming_service：邀請碼生成與正規化
- scoring_service：加權總分、平均與排名
- serializers：ORM 資料列轉成回應 schema
"""
