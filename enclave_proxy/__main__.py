from enclave_proxy.main import run

run()
