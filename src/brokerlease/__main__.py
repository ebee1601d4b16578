from brokerlease.app.main import main

main()
