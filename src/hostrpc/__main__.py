from hostrpc.cli import main

main()
