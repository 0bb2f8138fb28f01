"""コアモデル"""
