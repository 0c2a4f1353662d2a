"""certproxy tests"""
