"""各サービス共通の設定・ログ・エラー・イベントストア。"""
