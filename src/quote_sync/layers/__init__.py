"""処理レイヤー"""
