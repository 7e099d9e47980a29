# CLI commands module
"""
CLIコマンド実装パッケージ

各コマンドは独立したモジュールとして実装され、
main.py の COMMANDS から登録されます。
"""
