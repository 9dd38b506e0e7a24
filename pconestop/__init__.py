"""
PcOneStop — 注文・在庫サービス群

  inventory : 在庫台帳 (Stock Ledger)
  order     : 注文ステートマシン
  saga      : 注文ライフサイクル (Saga オーケストレーター)
"""
