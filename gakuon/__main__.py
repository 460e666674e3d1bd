from gakuon.cli import main

main()
